"""Currency rate lookup."""

from expense_gateway.services.rates.exchange_rates import ExchangeRateService

__all__ = ["ExchangeRateService"]
