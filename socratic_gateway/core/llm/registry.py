"""Provider registry: priority selection and per-provider health state.

State machine per provider::

    healthy --mark_failed--> degraded --mark_failed x threshold--> down
    degraded --mark_succeeded--> healthy
    down --successful probe--> healthy

Ordinary traffic never revives a ``down`` provider; only a probe does.
Every failure flags the provider for the next probe (see ``probe_pending``).
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from socratic_gateway.core.llm.models import ProviderConfig, ProviderStatus, utcnow
from socratic_gateway.core.logging import LoggerProtocol, default_logger

Probe = Callable[[ProviderConfig], Awaitable[bool]]

DEFAULT_FAILURE_THRESHOLD = 3


class ProviderRegistry:
    """Holds the configured providers and their live health.

    Args:
        providers: Provider configurations; ids must be unique
        failure_threshold: Consecutive failures that take a degraded
            provider down
        probe: Coroutine used by ``perform_health_check``; usually
            ``ProviderClient.probe``
        logger: Optional logger

    Raises:
        ValueError: If two providers share an id
    """

    def __init__(
        self,
        providers: Iterable[ProviderConfig] = (),
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        probe: Probe | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.id in self._providers:
                raise ValueError(f"Duplicate provider id '{provider.id}'")
            self._providers[provider.id] = provider
        self.failure_threshold = failure_threshold
        self._probe = probe
        self._lock = threading.Lock()
        self._logger = logger or default_logger(__name__)

    def __len__(self) -> int:
        return len(self._providers)

    def get_provider(self, provider_id: str) -> ProviderConfig | None:
        return self._providers.get(provider_id)

    def list_providers(self) -> list[ProviderConfig]:
        """All providers in selection order, including unusable ones."""
        return sorted(self._providers.values(), key=lambda p: (p.priority, p.id))

    def _candidates(self, excluding: Iterable[str] = ()) -> list[ProviderConfig]:
        excluded = set(excluding)
        return [p for p in self.list_providers() if p.is_usable and p.id not in excluded]

    def select_primary(self) -> ProviderConfig | None:
        """
        Return the preferred usable provider.

        Returns:
            The enabled, not-down provider with the lowest priority value
            (ties broken by id), or None when none is usable
        """
        with self._lock:
            candidates = self._candidates()
        return candidates[0] if candidates else None

    def select_fallback(self, excluding: str | Iterable[str]) -> ProviderConfig | None:
        """
        Return the next usable provider, skipping ``excluding``.

        Args:
            excluding: A provider id or several ids already attempted

        Returns:
            The best remaining usable provider, or None
        """
        if isinstance(excluding, str):
            excluding = (excluding,)
        with self._lock:
            candidates = self._candidates(excluding)
        return candidates[0] if candidates else None

    def mark_failed(self, provider_id: str) -> ProviderStatus | None:
        """
        Record a failed attempt and demote the provider.

        Returns:
            The provider's new status, or None for an unknown id
        """
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                return None
            previous = provider.status
            provider.consecutive_failures += 1
            provider.needs_probe = True
            if provider.status is ProviderStatus.HEALTHY:
                provider.status = ProviderStatus.DEGRADED
            elif (
                provider.status is ProviderStatus.DEGRADED
                and provider.consecutive_failures >= self.failure_threshold
            ):
                provider.status = ProviderStatus.DOWN
            status = provider.status
            failures = provider.consecutive_failures

        if status is not previous:
            log = self._logger.error if status is ProviderStatus.DOWN else self._logger.warning
            log(
                f"Provider {provider_id} is now {status.value} after {failures} consecutive failure(s)",
                provider=provider_id,
                status=status.value,
            )
        return status

    def mark_succeeded(self, provider_id: str) -> ProviderStatus | None:
        """
        Record a successful attempt.

        Resets the failure counter and promotes ``degraded`` back to
        ``healthy``. A ``down`` provider stays down until probed.

        Returns:
            The provider's new status, or None for an unknown id
        """
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                return None
            provider.consecutive_failures = 0
            promoted = provider.status is ProviderStatus.DEGRADED
            if promoted:
                provider.status = ProviderStatus.HEALTHY
                provider.needs_probe = False
            status = provider.status

        if promoted:
            self._logger.info(f"Provider {provider_id} recovered", provider=provider_id)
        return status

    def _mark_probe_succeeded(self, provider_id: str) -> None:
        with self._lock:
            provider = self._providers[provider_id]
            revived = provider.status is not ProviderStatus.HEALTHY
            provider.status = ProviderStatus.HEALTHY
            provider.consecutive_failures = 0
            provider.needs_probe = False
            provider.last_health_check = utcnow()
        if revived:
            self._logger.success(
                f"Provider {provider_id} passed health probe", provider=provider_id
            )

    @property
    def can_probe(self) -> bool:
        return self._probe is not None

    def pending_probes(self) -> list[ProviderConfig]:
        """Enabled providers flagged by a failure and awaiting their next probe."""
        with self._lock:
            return [
                p
                for p in self.list_providers()
                if p.enabled and (p.needs_probe or p.status is ProviderStatus.DOWN)
            ]

    async def perform_health_check(self, probe: Probe | None = None) -> dict[str, ProviderStatus]:
        """
        Probe every enabled provider concurrently.

        A successful probe promotes the provider to ``healthy`` from any
        state; a failed probe (or one that raises) counts as a failure.

        Args:
            probe: Overrides the probe given at construction

        Returns:
            Mapping of provider id to status after the check

        Raises:
            RuntimeError: If no probe is available
        """
        return await self._probe_all([p for p in self.list_providers() if p.enabled], probe)

    async def probe_pending(self, probe: Probe | None = None) -> dict[str, ProviderStatus]:
        """
        Probe only the providers returned by ``pending_probes``.

        This is how a ``down`` provider gets back into rotation without
        an explicit health check.

        Raises:
            RuntimeError: If no probe is available
        """
        return await self._probe_all(self.pending_probes(), probe)

    async def _probe_all(
        self, targets: list[ProviderConfig], probe: Probe | None
    ) -> dict[str, ProviderStatus]:
        probe = probe or self._probe
        if probe is None:
            raise RuntimeError("No health probe configured for the provider registry")

        outcomes = await asyncio.gather(
            *(probe(provider) for provider in targets), return_exceptions=True
        )

        for provider, outcome in zip(targets, outcomes):
            if outcome is True:
                self._mark_probe_succeeded(provider.id)
                continue
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self._logger.warning(
                    f"Health probe for {provider.id} raised {type(outcome).__name__}: {outcome}",
                    provider=provider.id,
                )
            self.mark_failed(provider.id)
            with self._lock:
                provider.last_health_check = utcnow()

        return {p.id: p.status for p in targets}

    def status_snapshot(self) -> list[dict[str, Any]]:
        """Plain-data view of every provider, for health endpoints and the CLI."""
        with self._lock:
            return [
                {
                    "id": p.id,
                    "model": p.model,
                    "priority": p.priority,
                    "enabled": p.enabled,
                    "status": p.status.value,
                    "consecutive_failures": p.consecutive_failures,
                    "needs_probe": p.needs_probe,
                    "last_health_check": p.last_health_check.isoformat()
                    if p.last_health_check
                    else None,
                }
                for p in sorted(self._providers.values(), key=lambda p: (p.priority, p.id))
            ]
