"""Configuration management using Pydantic Settings."""

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from socratic_gateway.core.constants import (
    DEFAULT_COST_CEILING,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_RESERVE_TOKENS,
)

# Endpoints used when a provider is configured through a convenience API key.
DEFAULT_ENDPOINTS: dict[str, str] = {
    "deepseek": "https://api.deepseek.com/v1",
    "openai": "https://api.openai.com/v1",
}


class ProviderSettings(BaseModel):
    """One upstream provider entry as read from configuration."""

    id: str
    endpoint: str
    model: str
    api_key: SecretStr | None = None
    priority: int = Field(default=1, ge=0)
    max_context_tokens: int = Field(default=DEFAULT_MAX_CONTEXT_TOKENS, ge=256)
    enabled: bool = True
    health_check_url: str | None = None

    @field_validator("endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the endpoint so paths can be appended safely."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid endpoint '{v}'. Must start with http:// or https://")
        return v


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables with SOCRATIC_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="SOCRATIC_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Providers. When empty, defaults are derived from the API keys below.
    providers: list[ProviderSettings] = Field(default_factory=list)

    # API Keys
    deepseek_api_key: SecretStr | None = None
    openai_api_key: SecretStr | None = None

    # Budget
    cost_ceiling: float = Field(default=DEFAULT_COST_CEILING, ge=0.0)
    max_context_tokens: int = Field(default=DEFAULT_MAX_CONTEXT_TOKENS, ge=256)
    reserve_tokens: int = Field(default=DEFAULT_RESERVE_TOKENS, ge=0)

    # Custom pricing for models not in the built-in table.
    # Format: {"model-name": {"input_per_million": 0.5, "output_per_million": 1.5}}
    custom_pricing: dict[str, dict[str, float]] = Field(default_factory=dict)

    # Generation
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    enable_rule_based_fallback: bool = True

    # Timeouts (seconds)
    request_timeout: float = Field(default=30.0, gt=0)
    stream_timeout: float = Field(default=180.0, gt=0)
    health_check_timeout: float = Field(default=5.0, gt=0)

    # Seconds between probes of failed providers
    health_check_interval: float = Field(default=DEFAULT_HEALTH_CHECK_INTERVAL, gt=0)

    # Registry
    failure_threshold: int = Field(default=3, ge=1, le=20)

    # Alert thresholds
    alert_daily_cost: float = Field(default=5.00, ge=0.0)
    alert_hourly_cost: float = Field(default=0.50, ge=0.0)
    alert_max_latency_ms: float = Field(default=30_000, gt=0)
    alert_min_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    alert_max_error_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    alert_max_tokens_per_hour: int = Field(default=100_000, ge=0)
    alert_max_requests_per_minute: int = Field(default=60, ge=0)

    # Output
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate and normalize the log level name.

        Args:
            v: The log level to validate

        Returns:
            The upper-cased log level

        Raises:
            ValueError: If the level is not a standard logging level
        """
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        level = v.upper()
        if level not in valid_levels:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(valid_levels)}"
            )
        return level

    @model_validator(mode="after")
    def set_default_providers(self) -> "Settings":
        """
        Derive default providers from the convenience API key fields.

        DeepSeek is preferred (priority 1) and OpenAI is the secondary
        (priority 2). Explicitly configured providers always win.

        Returns:
            The Settings instance with providers populated if needed
        """
        if self.providers:
            return self

        defaults = []
        if self.deepseek_api_key is not None:
            defaults.append(
                ProviderSettings(
                    id="deepseek",
                    endpoint=DEFAULT_ENDPOINTS["deepseek"],
                    model="deepseek-chat",
                    api_key=self.deepseek_api_key,
                    priority=1,
                    max_context_tokens=self.max_context_tokens,
                )
            )
        if self.openai_api_key is not None:
            defaults.append(
                ProviderSettings(
                    id="openai",
                    endpoint=DEFAULT_ENDPOINTS["openai"],
                    model="gpt-4o-mini",
                    api_key=self.openai_api_key,
                    priority=2,
                    max_context_tokens=16_000,
                )
            )
        self.providers = defaults
        return self

    def get_api_key(self, provider_id: str) -> str | None:
        """
        Get the plain-text API key configured for a provider.

        Args:
            provider_id: Identifier of a configured provider

        Returns:
            The API key, or None when the provider has no credential

        Raises:
            ValueError: If no provider with this id is configured
        """
        for provider in self.providers:
            if provider.id == provider_id:
                return provider.api_key.get_secret_value() if provider.api_key else None

        valid = ", ".join(sorted(p.id for p in self.providers)) or "<none>"
        raise ValueError(f"Unknown provider '{provider_id}'. Configured providers: {valid}")
