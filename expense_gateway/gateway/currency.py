"""
Currency Normalizer

Detects an amount/currency pair in the user's own words (never in the
generated SQL) and converts expense-insert amounts into the target book's
currency before execution.

DESIGN DECISION: Conversion failure is non-fatal. The statement proceeds
with the amount as entered and the failure becomes an advisory line in
the response.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict

from expense_gateway.gateway.errors import UpstreamUnavailable
from expense_gateway.models.entities import UserCatalog
from expense_gateway.models.statements import (
    Entity,
    InsertStatement,
    LiteralKind,
    SqlLiteral,
    Statement,
)


logger = structlog.get_logger(__name__)


# =============================================================================
# CURRENCY TABLES
# =============================================================================

SUPPORTED_CURRENCIES = (
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR", "MXN",
    "BRL", "ZAR", "RUB", "KRW", "SGD", "HKD", "NZD", "SEK", "NOK", "DKK",
    "PLN", "CZK", "HUF", "TRY", "TWD", "THB", "IDR", "MYR", "PHP", "VND",
    "ILS", "AED", "SAR", "QAR", "KWD", "BHD", "OMR", "JOD", "LBP", "EGP",
    "NGN", "CLP", "COP", "PEN", "ARS", "UYU",
)

# Display symbol per supported currency
CURRENCY_SYMBOLS = {
    "USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "CAD": "C$",
    "AUD": "A$", "CHF": "CHF ", "CNY": "CN¥", "INR": "₹", "MXN": "MX$",
    "BRL": "R$", "ZAR": "R", "RUB": "₽", "KRW": "₩", "SGD": "S$",
    "HKD": "HK$", "NZD": "NZ$", "SEK": "kr ", "NOK": "kr ", "DKK": "kr ",
    "PLN": "zł ", "CZK": "Kč ", "HUF": "Ft ", "TRY": "₺", "TWD": "NT$",
    "THB": "฿", "IDR": "Rp ", "MYR": "RM ", "PHP": "₱", "VND": "₫",
    "ILS": "₪", "AED": "د.إ ", "SAR": "﷼", "QAR": "QR ", "KWD": "KD ",
    "BHD": "BD ", "OMR": "OMR ", "JOD": "JD ", "LBP": "L£", "EGP": "E£",
    "NGN": "₦", "CLP": "CLP$", "COP": "COL$", "PEN": "S/ ", "ARS": "AR$",
    "UYU": "$U ",
}

# Symbols recognized in user text; ambiguous ones map to the common reading
_DETECTION_SYMBOLS = {
    "US$": "USD", "$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY",
    "C$": "CAD", "A$": "AUD", "CN¥": "CNY", "₹": "INR", "MX$": "MXN",
    "R$": "BRL", "₽": "RUB", "₩": "KRW", "S$": "SGD", "HK$": "HKD",
    "NZ$": "NZD", "zł": "PLN", "Kč": "CZK", "₺": "TRY", "NT$": "TWD",
    "฿": "THB", "₱": "PHP", "₫": "VND", "₪": "ILS", "د.إ": "AED",
    "﷼": "SAR", "₦": "NGN", "L£": "LBP", "E£": "EGP", "AR$": "ARS",
}

_CURRENCY_WORDS = {
    "dollar": "USD", "dollars": "USD", "bucks": "USD",
    "euro": "EUR", "euros": "EUR",
    "pound": "GBP", "pounds": "GBP", "quid": "GBP",
    "yen": "JPY",
    "rupee": "INR", "rupees": "INR",
    "ruble": "RUB", "rubles": "RUB", "rouble": "RUB", "roubles": "RUB",
    "yuan": "CNY", "renminbi": "CNY",
    "franc": "CHF", "francs": "CHF",
    "peso": "MXN", "pesos": "MXN",
    "real": "BRL", "reais": "BRL",
    "rand": "ZAR",
    "lira": "TRY",
    "baht": "THB",
    "dirham": "AED", "dirhams": "AED",
    "riyal": "SAR", "riyals": "SAR",
    "shekel": "ILS", "shekels": "ILS",
    "zloty": "PLN", "zlotys": "PLN",
    "forint": "HUF",
    "ringgit": "MYR",
    "rupiah": "IDR",
    "dong": "VND",
    "naira": "NGN",
}

_AMOUNT = r"(?<![\d.,])(?P<amt>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)(?![\d])"


def _alternation(options) -> str:
    return "|".join(re.escape(o) for o in sorted(options, key=len, reverse=True))


_SYMBOLS = _alternation(_DETECTION_SYMBOLS)
_CODES = "|".join(SUPPORTED_CURRENCIES)
_WORDS = _alternation(_CURRENCY_WORDS)

# Priority order: first pattern with a match wins
_PATTERNS = (
    ("symbol_before_amount", re.compile(rf"(?<![A-Za-z])(?P<cur>{_SYMBOLS})\s?{_AMOUNT}")),
    ("amount_before_symbol", re.compile(rf"{_AMOUNT}\s?(?P<cur>{_SYMBOLS})(?![A-Za-z])")),
    ("amount_before_code", re.compile(rf"{_AMOUNT}\s?(?P<cur>\b(?:{_CODES})\b|(?i:\b(?:{_WORDS})\b))")),
    ("code_before_amount", re.compile(rf"\b(?P<cur>{_CODES})\s?{_AMOUNT}")),
)


def currency_symbol(code: Optional[str]) -> str:
    """Display prefix for a currency code; unknown codes render as 'XYZ '."""
    if not code:
        return ""
    return CURRENCY_SYMBOLS.get(code.upper(), f"{code.upper()} ")


def format_money(amount, code: Optional[str]) -> str:
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{currency_symbol(code)}{value:,.2f}"


def _currency_code(token: str) -> str:
    if token in _DETECTION_SYMBOLS:
        return _DETECTION_SYMBOLS[token]
    if token.upper() in SUPPORTED_CURRENCIES and token == token.upper():
        return token
    return _CURRENCY_WORDS[token.lower()]


# =============================================================================
# DETECTION
# =============================================================================

class DetectedAmount(BaseModel):
    """An amount and the currency the user wrote next to it."""
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str
    matched: str
    pattern: str


def detect_amounts(utterance: str) -> list[DetectedAmount]:
    """
    Every amount/currency pair in the text, in pattern-priority order.

    A span claimed by a higher-priority pattern is not matched again.
    """
    found: list[DetectedAmount] = []
    claimed: list[tuple[int, int]] = []
    for name, pattern in _PATTERNS:
        for match in pattern.finditer(utterance or ""):
            start, end = match.span()
            if any(start < c_end and c_start < end for c_start, c_end in claimed):
                continue
            claimed.append((start, end))
            found.append(DetectedAmount(
                amount=Decimal(match.group("amt").replace(",", "")),
                currency=_currency_code(match.group("cur")),
                matched=match.group(0),
                pattern=name,
            ))
    return found


def detect_amount(utterance: str) -> Optional[DetectedAmount]:
    """The highest-priority amount/currency pair, or None."""
    amounts = detect_amounts(utterance)
    return amounts[0] if amounts else None


def convert_amount(amount: Decimal, rate: Decimal) -> Decimal:
    """A × rate rounded half-up to two decimals."""
    return (Decimal(amount) * Decimal(rate)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# =============================================================================
# NORMALIZER
# =============================================================================

class RateProvider(Protocol):
    async def get_rate(self, source: str, target: str) -> Decimal:
        ...


class ConversionResult(BaseModel):
    """Normalizer output: the (possibly) rewritten statement plus notes."""
    model_config = ConfigDict(frozen=True)

    statement: Statement
    converted: bool = False
    advisory: Optional[str] = None
    note: Optional[str] = None
    source_currency: Optional[str] = None
    target_currency: Optional[str] = None
    original_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None


class CurrencyNormalizer:
    """
    Converts expense-insert amounts into the target book's currency.

    Only a detected amount equal to the statement's own amount is
    converted, so a reply with several expenses converts each one
    against the figure the user actually gave for it.
    """

    def __init__(self, rate_service: RateProvider, audit_logger=None):
        self._rates = rate_service
        self._audit = audit_logger

    async def normalize(
        self,
        statement: Statement,
        utterance: str,
        catalog: UserCatalog,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ConversionResult:
        """Convert an expense insert; every other statement passes through."""
        result = ConversionResult(statement=statement)
        if not isinstance(statement, InsertStatement) or statement.table != Entity.EXPENSES:
            return result

        amount_literal = statement.value_of("amount")
        category_literal = statement.value_of("categoryId")
        if amount_literal is None or amount_literal.kind != LiteralKind.NUMBER or category_literal is None:
            return result

        book = catalog.book_for_category(category_literal.value or "")
        if book is None:
            return result

        stated = Decimal(amount_literal.value)
        detected = next((d for d in detect_amounts(utterance) if d.amount == stated), None)
        if detected is None:
            return result

        source, target = detected.currency, book.currency
        if source == target:
            return result.model_copy(update={
                "source_currency": source,
                "target_currency": target,
                "original_amount": detected.amount,
                "rate": Decimal(1),
            })

        try:
            rate = await self._rates.get_rate(source, target)
        except UpstreamUnavailable as e:
            logger.warning("currency_conversion_failed", source=source, target=target, error=str(e))
            if self._audit is not None:
                await self._audit.log_currency_conversion_failed(
                    user_id=user_id,
                    source=source,
                    target=target,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return result.model_copy(update={
                "advisory": (
                    f"Couldn't convert {format_money(detected.amount, source)} to {target} right now, "
                    f"so the amount was recorded as {detected.amount} {target}."
                ),
                "source_currency": source,
                "target_currency": target,
                "original_amount": detected.amount,
            })

        converted = convert_amount(detected.amount, rate)
        values = dict(statement.values)
        values["amount"] = SqlLiteral.number(converted)
        new_statement = statement.model_copy(update={"values": values})

        if self._audit is not None:
            await self._audit.log_currency_converted(
                user_id=user_id,
                original=str(detected.amount),
                source=source,
                converted=str(converted),
                target=target,
                rate=str(rate),
                correlation_id=correlation_id,
            )

        return ConversionResult(
            statement=new_statement,
            converted=True,
            note=(
                f"Converted {format_money(detected.amount, source)} to "
                f"{format_money(converted, target)} (rate {rate})."
            ),
            source_currency=source,
            target_currency=target,
            original_amount=detected.amount,
            rate=rate,
        )
