"""HTTP client for OpenAI-compatible chat completion providers."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import ValidationError

from socratic_gateway.core.constants import CHARS_PER_TOKEN
from socratic_gateway.core.errors import (
    AuthenticationError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    ServerError,
    UnknownProviderError,
)
from socratic_gateway.core.llm.costs import CostGuard
from socratic_gateway.core.llm.models import (
    ProviderConfig,
    ProviderResponse,
    RequestContext,
    TokenEstimate,
    TokenUsage,
)
from socratic_gateway.core.llm.schemas import ChatCompletion, ChatCompletionChunk
from socratic_gateway.core.llm.sse import DONE_SENTINEL, SSEDecoder
from socratic_gateway.core.logging import LoggerProtocol, default_logger

CHAT_COMPLETIONS_PATH = "/chat/completions"
MODELS_PATH = "/models"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ProviderStream:
    """An open streaming response from one provider.

    Iterating yields text tokens as they are decoded. The underlying HTTP
    response is closed when iteration finishes, fails, or the consumer
    stops early (``aclose()`` or task cancellation).

    Attributes:
        provider: The provider this stream is connected to
        content: Text received so far
        usage: Token usage if the provider reported it in the final chunk
    """

    def __init__(
        self,
        client: ProviderClient,
        provider: ProviderConfig,
        response: httpx.Response,
        started_at: float,
    ) -> None:
        self._client = client
        self.provider = provider
        self._response = response
        self._started_at = started_at
        self._iterator: AsyncIterator[str] | None = None
        self.content = ""
        self.usage: TokenUsage | None = None
        self.finished = False

    @property
    def latency_ms(self) -> float:
        return _elapsed_ms(self._started_at)

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._tokens()
        return self._iterator

    async def _tokens(self) -> AsyncIterator[str]:
        decoder = SSEDecoder()
        try:
            async for chunk in self._response.aiter_text():
                for event in decoder.feed(chunk):
                    if event.data.strip() == DONE_SENTINEL:
                        self.finished = True
                        return
                    token = self._parse_event(event.data)
                    if token:
                        self.content += token
                        yield token
            for event in decoder.flush():
                if event.data.strip() == DONE_SENTINEL:
                    break
                token = self._parse_event(event.data)
                if token:
                    self.content += token
                    yield token
            self.finished = True
        except Exception as e:
            self._client._handle_exception(e, self.provider, self._client.stream_timeout)
        finally:
            await self._response.aclose()

    def _parse_event(self, data: str) -> str:
        try:
            chunk = ChatCompletionChunk.model_validate_json(data)
        except ValidationError as e:
            raise UnknownProviderError(
                provider=self.provider.id,
                model=self.provider.model,
                message=f"Malformed stream event: {e.error_count()} validation error(s)",
            ) from e
        if chunk.usage is not None:
            self.usage = TokenUsage(
                input=chunk.usage.prompt_tokens, output=chunk.usage.completion_tokens
            )
        return "".join(choice.delta.content or "" for choice in chunk.choices)

    async def aclose(self) -> None:
        """Stop the stream and release the connection. Idempotent."""
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._response.aclose()


class ProviderClient:
    """Executes calls and streams against a single provider at a time.

    Builds the OpenAI-compatible request, applies an explicit timeout,
    validates the response against a schema and converts every failure into
    a ProviderError subclass. Raw httpx exceptions never escape.

    Args:
        cost_guard: Used to price the actual token usage of each call
        request_timeout: Timeout in seconds for non-streaming calls
        stream_timeout: Timeout in seconds for streaming calls
        health_check_timeout: Timeout in seconds for probes
        temperature: Default sampling temperature
        http_client: Optional preconfigured httpx.AsyncClient (tests inject
            one backed by httpx.MockTransport)
        logger: Optional logger
    """

    def __init__(
        self,
        cost_guard: CostGuard | None = None,
        request_timeout: float = 30.0,
        stream_timeout: float = 180.0,
        health_check_timeout: float = 5.0,
        temperature: float = 0.7,
        http_client: httpx.AsyncClient | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self.cost_guard = cost_guard or CostGuard(logger=logger)
        self.request_timeout = request_timeout
        self.stream_timeout = stream_timeout
        self.health_check_timeout = health_check_timeout
        self.temperature = temperature
        self._http = http_client
        self._owns_http = http_client is None
        self._logger = logger or default_logger(__name__)

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it. Idempotent."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False

    def build_payload(
        self,
        provider: ProviderConfig,
        context: RequestContext,
        budget: TokenEstimate,
        stream: bool,
    ) -> dict[str, Any]:
        temperature = context.temperature if context.temperature is not None else self.temperature
        return {
            "model": provider.model,
            "messages": context.wire_messages(),
            "temperature": temperature,
            "max_tokens": budget.max_output_tokens,
            "stream": stream,
        }

    @staticmethod
    def _headers(provider: ProviderConfig) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if provider.credential:
            headers["Authorization"] = f"Bearer {provider.credential}"
        return headers

    async def call(
        self, provider: ProviderConfig, context: RequestContext, budget: TokenEstimate
    ) -> ProviderResponse:
        """
        Execute one non-streaming completion.

        Args:
            provider: Target provider
            context: Request to send
            budget: Token budget; its output allowance becomes ``max_tokens``

        Returns:
            ProviderResponse with content, token usage, cost and latency

        Raises:
            ProviderTimeoutError: If the call exceeds ``request_timeout``
            AuthenticationError: On HTTP 401/403
            RateLimitError: On HTTP 429
            ServerError: On HTTP 5xx
            NetworkError: If the provider cannot be reached
            UnknownProviderError: For malformed bodies and anything else
        """
        payload = self.build_payload(provider, context, budget, stream=False)
        self._logger.debug(
            f"Calling {provider.id} ({provider.model}), max_tokens={budget.max_output_tokens}",
            provider=provider.id,
            model=provider.model,
        )
        start = time.perf_counter()
        try:
            response = await self.http.post(
                provider.endpoint + CHAT_COMPLETIONS_PATH,
                json=payload,
                headers=self._headers(provider),
                timeout=self.request_timeout,
            )
            self._raise_for_status(response, provider)
            completion = ChatCompletion.model_validate_json(response.content)
        except Exception as e:
            self._handle_exception(e, provider, self.request_timeout)

        content = "".join(choice.message.content or "" for choice in completion.choices[:1])
        if completion.usage is not None:
            usage = TokenUsage(
                input=completion.usage.prompt_tokens,
                output=completion.usage.completion_tokens,
            )
        else:
            usage = TokenUsage(
                input=budget.input_tokens, output=len(content) // CHARS_PER_TOKEN
            )
        cost = self.cost_guard.estimate_cost(usage.input, usage.output, provider.model)

        return ProviderResponse(
            content=content,
            tokens_used=usage,
            cost=cost.total_cost,
            latency_ms=_elapsed_ms(start),
            provider=provider.id,
            model=provider.model,
        )

    async def open_stream(
        self, provider: ProviderConfig, context: RequestContext, budget: TokenEstimate
    ) -> ProviderStream:
        """
        Open a streaming completion and validate the response status.

        The connection is established and the status checked before this
        returns, so connect-time failures surface here and not mid-stream.

        Returns:
            ProviderStream yielding text tokens

        Raises:
            ProviderError: Same classification as ``call``
        """
        payload = self.build_payload(provider, context, budget, stream=True)
        headers = self._headers(provider)
        headers["Accept"] = "text/event-stream"
        start = time.perf_counter()
        response: httpx.Response | None = None
        try:
            request = self.http.build_request(
                "POST",
                provider.endpoint + CHAT_COMPLETIONS_PATH,
                json=payload,
                headers=headers,
                timeout=self.stream_timeout,
            )
            response = await self.http.send(request, stream=True)
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response, provider)
        except Exception as e:
            if response is not None:
                await response.aclose()
            self._handle_exception(e, provider, self.stream_timeout)

        return ProviderStream(self, provider, response, start)

    async def stream(
        self, provider: ProviderConfig, context: RequestContext, budget: TokenEstimate
    ) -> AsyncIterator[str]:
        """Open a stream and yield its tokens; closing this generator closes the connection."""
        provider_stream = await self.open_stream(provider, context, budget)
        try:
            async for token in provider_stream:
                yield token
        finally:
            await provider_stream.aclose()

    async def probe(self, provider: ProviderConfig) -> bool:
        """
        Issue a lightweight availability probe.

        Uses ``health_check_url`` when configured, otherwise GETs
        ``{endpoint}/models``.

        Returns:
            True if the provider answered with a non-error status
        """
        url = provider.health_check_url or provider.endpoint + MODELS_PATH
        try:
            response = await self.http.get(
                url, headers=self._headers(provider), timeout=self.health_check_timeout
            )
        except httpx.HTTPError as e:
            self._logger.debug(
                f"Health probe for {provider.id} failed: {type(e).__name__}",
                provider=provider.id,
            )
            return False
        return response.status_code < 400

    def _raise_for_status(self, response: httpx.Response, provider: ProviderConfig) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = self._error_detail(response)
        if status in (401, 403):
            raise AuthenticationError(provider=provider.id, model=provider.model, message=detail)
        if status == 429:
            raise RateLimitError(
                provider=provider.id,
                model=provider.model,
                message=detail,
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise ServerError(
                provider=provider.id, model=provider.model, message=detail, status_code=status
            )
        raise UnknownProviderError(
            provider=provider.id, model=provider.model, message=f"HTTP {status}: {detail}"
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
        return response.reason_phrase

    def _handle_exception(self, e: Exception, provider: ProviderConfig, timeout: float) -> None:
        """
        Convert any failure into the matching ProviderError subclass.

        Raises:
            ProviderError: Always
        """
        if isinstance(e, ProviderError):
            raise e

        if isinstance(e, httpx.TimeoutException):
            raise ProviderTimeoutError(
                provider=provider.id,
                model=provider.model,
                message=f"Request timed out after {timeout}s",
                timeout=timeout,
            ) from e

        if isinstance(e, httpx.TransportError):
            raise NetworkError(
                provider=provider.id,
                model=provider.model,
                message=f"{type(e).__name__}: {e}",
            ) from e

        if isinstance(e, ValidationError):
            raise UnknownProviderError(
                provider=provider.id,
                model=provider.model,
                message=f"Malformed response body: {e.error_count()} validation error(s)",
            ) from e

        raise UnknownProviderError(
            provider=provider.id, model=provider.model, message=f"Unexpected error: {e}"
        ) from e
