"""
Exchange Rate Service

Looks up a conversion rate from an HTTP rates endpoint:

    GET {base_url}/{SOURCE}  ->  {"rates": {"USD": 1.0, "EUR": 0.92, ...}}

DESIGN DECISION: Exactly one attempt per lookup, bounded by a timeout.
A slow or failed lookup degrades to an unconverted amount; it never
blocks the chat turn with retries.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import structlog

from expense_gateway.gateway.errors import UpstreamUnavailable


logger = structlog.get_logger(__name__)

SERVICE_NAME = "exchange_rates"


class ExchangeRateService:
    """Single-attempt currency rate lookup over httpx."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Rates endpoint; the source currency is appended
            timeout_seconds: Bound on the single lookup attempt
            client: Shared client (tests pass one with a mock transport)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def get_rate(self, source: str, target: str) -> Decimal:
        """
        Rate to multiply a `source` amount by to get `target`.

        Raises:
            UpstreamUnavailable: on timeout, HTTP error, or a payload
                without the target rate
        """
        source, target = source.upper(), target.upper()
        if source == target:
            return Decimal(1)

        url = f"{self._base_url}/{source}"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
            payload = response.json()
            rate = Decimal(str(payload["rates"][target]))
        except httpx.HTTPError as e:
            logger.warning("rate_lookup_failed", source=source, target=target, error=str(e))
            raise UpstreamUnavailable(SERVICE_NAME, f"Rate lookup failed: {e}") from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning("rate_payload_invalid", source=source, target=target, error=str(e))
            raise UpstreamUnavailable(
                SERVICE_NAME, f"No {source}->{target} rate in the response"
            ) from e

        if not rate.is_finite() or rate <= 0:
            raise UpstreamUnavailable(SERVICE_NAME, f"Invalid {source}->{target} rate {rate}")
        return rate

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
