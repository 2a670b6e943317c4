"""
Configuration Management for the Expense Chat Gateway

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Settings are read from the environment once, then frozen into a
GatewayConfig value that is passed explicitly into the pipeline.
Nothing downstream reads ambient global state for model choice or timeouts.
"""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration (primary/fallback model pair)."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    primary_model: str = Field(
        default="gemini-1.5-flash",
        description="Model asked first"
    )
    fallback_model: str = Field(
        default="gemini-1.5-flash-8b",
        description="Model used once when the primary is rate limited"
    )
    max_tokens: int = Field(
        default=1000,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-call timeout for the completion request"
    )


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./expenses.db",
        description="SQLAlchemy async database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )

    @field_validator('url')
    @classmethod
    def validate_async_driver(cls, v: str) -> str:
        """The gateway talks to the store through an async engine."""
        if "+" not in v.split("://", 1)[0]:
            raise ValueError(
                f"Database URL must name an async driver (e.g. sqlite+aiosqlite), got {v!r}"
            )
        return v


class ExchangeRateSettings(BaseSettings):
    """Currency-rate lookup service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGE_RATES_",
        extra="ignore"
    )

    base_url: str = Field(
        default="https://open.er-api.com/v6/latest",
        description="Rates endpoint; the source currency is appended as a path segment"
    )
    timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the single lookup attempt"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Conversation limits
    max_history_turns: int = Field(
        default=10,
        ge=0,
        le=100,
        description="How many prior turns are sent to the model"
    )

    # Query limits
    max_select_rows: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Upper bound applied to every generated SELECT"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def exchange_rates(self) -> ExchangeRateSettings:
        return ExchangeRateSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


class GatewayConfig(BaseModel):
    """
    Immutable runtime configuration for one process.

    Built once at startup and handed to every component that needs it.
    """
    model_config = ConfigDict(frozen=True)

    primary_model: str = "gemini-1.5-flash"
    fallback_model: str = "gemini-1.5-flash-8b"
    temperature: float = 0.2
    max_tokens: int = 1000
    llm_timeout_seconds: float = 30.0
    rates_base_url: str = "https://open.er-api.com/v6/latest"
    rates_timeout_seconds: float = 5.0
    max_history_turns: int = 10
    max_select_rows: int = 50

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GatewayConfig":
        """Freeze the current environment into a config value."""
        settings = settings or get_settings()
        gemini = settings.gemini
        rates = settings.exchange_rates
        app = settings.app
        return cls(
            primary_model=gemini.primary_model,
            fallback_model=gemini.fallback_model,
            temperature=gemini.temperature,
            max_tokens=gemini.max_tokens,
            llm_timeout_seconds=gemini.timeout_seconds,
            rates_base_url=rates.base_url,
            rates_timeout_seconds=rates.timeout_seconds,
            max_history_turns=app.max_history_turns,
            max_select_rows=app.max_select_rows,
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("gemini", "database", "exchange_rates", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
