"""Configuration package."""

from expense_gateway.config.settings import (
    AppSettings,
    DatabaseSettings,
    ExchangeRateSettings,
    GatewayConfig,
    GeminiSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "ExchangeRateSettings",
    "GatewayConfig",
    "GeminiSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
