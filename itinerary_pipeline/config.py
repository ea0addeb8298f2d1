import os
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .retry import RetryConfig, default_policy, rate_limit_policy, transient_only_condition


ProviderKind = Literal["gemini", "openai", "fake"]


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class PipelineConfig(BaseModel):
    """Every tunable of the pipeline. Components receive it explicitly."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Provider
    provider: ProviderKind = "gemini"
    model: str = "gemini-1.5-flash"
    api_key: str | None = None
    api_base: str = "https://api.openai.com/v1"

    # Generation parameters
    max_tokens: int = Field(20000, ge=1)
    temperature: float = Field(0.7, ge=0, le=2)
    quick_max_tokens: int = Field(2000, ge=1)
    quick_temperature: float = Field(0.8, ge=0, le=2)

    # Timeouts
    request_timeout_s: float = Field(30.0, gt=0)
    default_timeout_s: float = Field(180.0, gt=0)
    quick_timeout_s: float = Field(90.0, gt=0)

    # Outbound rate limit
    requests_per_minute: int = Field(60, ge=1)
    rate_window_s: float = Field(60.0, gt=0)
    politeness_delay_s: float = Field(0.1, ge=0)

    # Circuit breaker
    breaker_failure_threshold: int = Field(3, ge=1)
    breaker_reset_timeout_s: float = Field(60.0, ge=0)
    breaker_monitoring_period_s: float = Field(120.0, gt=0)

    cache_ttl_s: float = Field(86400.0, gt=0)

    default_retry: RetryConfig = Field(
        default_factory=lambda: default_policy(retry_condition=transient_only_condition)
    )
    rate_limit_retry: RetryConfig = Field(default_factory=rate_limit_policy)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        provider = os.getenv("ITINERARY_PROVIDER", "gemini").lower()
        if provider not in ("gemini", "openai", "fake"):
            provider = "gemini"
        default_model = "gpt-4o-mini" if provider == "openai" else "gemini-1.5-flash"
        api_key = os.getenv("ITINERARY_API_KEY")
        if api_key is None:
            api_key = os.getenv("GEMINI_API_KEY") if provider == "gemini" else os.getenv("OPENAI_API_KEY")
        return cls(
            provider=provider,
            model=os.getenv("ITINERARY_MODEL", default_model),
            api_key=api_key,
            api_base=os.getenv("ITINERARY_API_BASE", "https://api.openai.com/v1"),
            max_tokens=_env_int("ITINERARY_MAX_TOKENS", 20000),
            temperature=_env_float("ITINERARY_TEMPERATURE", 0.7),
            quick_max_tokens=_env_int("ITINERARY_QUICK_MAX_TOKENS", 2000),
            quick_temperature=_env_float("ITINERARY_QUICK_TEMPERATURE", 0.8),
            request_timeout_s=_env_float("ITINERARY_REQUEST_TIMEOUT_SEC", 30.0),
            default_timeout_s=_env_float("ITINERARY_TIMEOUT_SEC", 180.0),
            quick_timeout_s=_env_float("ITINERARY_QUICK_TIMEOUT_SEC", 90.0),
            requests_per_minute=_env_int("ITINERARY_REQUESTS_PER_MINUTE", 60),
            rate_window_s=_env_float("ITINERARY_RATE_WINDOW_SEC", 60.0),
            politeness_delay_s=_env_float("ITINERARY_POLITENESS_DELAY_SEC", 0.1),
            breaker_failure_threshold=_env_int("ITINERARY_BREAKER_THRESHOLD", 3),
            breaker_reset_timeout_s=_env_float("ITINERARY_BREAKER_RESET_SEC", 60.0),
            breaker_monitoring_period_s=_env_float("ITINERARY_BREAKER_WINDOW_SEC", 120.0),
            cache_ttl_s=_env_float("ITINERARY_CACHE_TTL_SEC", 86400.0),
        )
