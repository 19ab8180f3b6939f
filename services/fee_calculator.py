"""
Fee Calculator

Splits a gross payout into platform fee, processing fee and net amount.

Default fees (overridable through platform_settings, category "fees"):
- Platform fee: 4%
- Processing fee: 3%
- Total: 7%

A payer (company) may carry a custom platform fee percentage, in which case
the breakdown is flagged is_custom_fee.

All arithmetic is Decimal. Each fee component is rounded to the cent on its
own (ROUND_HALF_UP) and net is gross minus the two rounded fees, so the
three components add back up to the rounded gross.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Tuple, Union

from database.ledger import PaymentLedger

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal("0.04")
DEFAULT_PROCESSING_FEE_PERCENTAGE = Decimal("0.03")
DEFAULT_TOTAL_FEE_PERCENTAGE = DEFAULT_PLATFORM_FEE_PERCENTAGE + DEFAULT_PROCESSING_FEE_PERCENTAGE

MAX_PLATFORM_FEE_PERCENTAGE = Decimal("0.5")

# Settings refresh every 5 minutes
CACHE_TTL_SECONDS = 5 * 60

Amount = Union[Decimal, str, int]


def to_money(value: Amount) -> Decimal:
    """Convert to a two-place Decimal. Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("Monetary amounts must be Decimal, str or int, not float")
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e


def round_fee(gross: Decimal, percentage: Decimal) -> Decimal:
    return (gross * percentage).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: Decimal
    platform_fee_amount: Decimal
    platform_fee_percentage: Decimal
    stripe_fee_amount: Decimal
    net_amount: Decimal
    is_custom_fee: bool = False

    @property
    def processing_fee_amount(self) -> Decimal:
        return self.stripe_fee_amount

    def as_strings(self) -> Dict[str, object]:
        """Formatted values (2 decimal places) for storage and API responses."""
        return {
            "gross_amount": f"{self.gross_amount:.2f}",
            "platform_fee_amount": f"{self.platform_fee_amount:.2f}",
            "platform_fee_percentage": str(self.platform_fee_percentage),
            "stripe_fee_amount": f"{self.stripe_fee_amount:.2f}",
            "net_amount": f"{self.net_amount:.2f}",
            "is_custom_fee": self.is_custom_fee,
        }

    def ledger_fields(self) -> Dict[str, Decimal]:
        return {
            "gross_amount": self.gross_amount,
            "platform_fee_amount": self.platform_fee_amount,
            "processing_fee_amount": self.stripe_fee_amount,
            "net_amount": self.net_amount,
        }


def calculate_fees_with_percentage(
    gross_amount: Amount,
    platform_fee_percentage: Decimal,
    processing_fee_percentage: Decimal = DEFAULT_PROCESSING_FEE_PERCENTAGE,
    is_custom_fee: bool = False,
) -> FeeBreakdown:
    """
    Calculate fees using a known platform fee percentage.

    Raises:
        ValueError: negative gross amount
    """
    gross = to_money(gross_amount)
    if gross < 0:
        raise ValueError("Gross amount must not be negative")

    platform_fee = round_fee(gross, platform_fee_percentage)
    processing_fee = round_fee(gross, processing_fee_percentage)
    net = gross - platform_fee - processing_fee

    return FeeBreakdown(
        gross_amount=gross,
        platform_fee_amount=platform_fee,
        platform_fee_percentage=platform_fee_percentage,
        stripe_fee_amount=processing_fee,
        net_amount=net,
        is_custom_fee=is_custom_fee,
    )


def calculate_fees_default(gross_amount: Amount) -> FeeBreakdown:
    """Default percentages, no payer override."""
    return calculate_fees_with_percentage(gross_amount, DEFAULT_PLATFORM_FEE_PERCENTAGE)


def format_fee_percentage(percentage: Decimal) -> str:
    """Format for display: Decimal("0.04") -> "4%", Decimal("0.045") -> "4.50%"."""
    percent = Decimal(percentage) * 100
    if percent == percent.to_integral_value():
        return f"{percent:.0f}%"
    return f"{percent:.2f}%"


def parse_fee_percentage(value: str) -> Optional[Decimal]:
    """Parse "4" or "4%" into Decimal("0.04"). None when invalid or outside 0-100."""
    cleaned = str(value).replace("%", "").strip()
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not parsed.is_finite() or parsed < 0 or parsed > 100:
        return None
    return parsed / 100


def is_valid_platform_fee_percentage(percentage: Decimal) -> bool:
    """Platform fee must be between 0% and 50%."""
    return Decimal(0) <= Decimal(percentage) <= MAX_PLATFORM_FEE_PERCENTAGE


class FeeCalculator:
    """
    Fee calculator bound to the ledger for settings and payer overrides.

    Usage:
        calculator = FeeCalculator(ledger)
        fees = calculator.calculate_fees(Decimal("1000.00"), payer_id=company.id)
        fees.net_amount  # Decimal("930.00")
    """

    def __init__(self, ledger: PaymentLedger, cache_ttl_seconds: float = CACHE_TTL_SECONDS):
        self.ledger = ledger
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Optional[Tuple[Decimal, Decimal, float]] = None

    def clear_cache(self) -> None:
        """Drop cached settings (call after platform settings change)."""
        self._cache = None

    def get_platform_fee_settings(self) -> Tuple[Decimal, Decimal]:
        """Return (platform_fee, processing_fee) as fractions, cached for 5 minutes."""
        now = time.monotonic()
        if self._cache and now - self._cache[2] < self.cache_ttl_seconds:
            return self._cache[0], self._cache[1]

        settings = self.ledger.get_platform_settings("fees")
        platform_fee = self._setting_or_default(
            settings, "platform_fee_percentage", DEFAULT_PLATFORM_FEE_PERCENTAGE
        )
        processing_fee = self._setting_or_default(
            settings, "stripe_processing_fee_percentage", DEFAULT_PROCESSING_FEE_PERCENTAGE
        )

        self._cache = (platform_fee, processing_fee, now)
        return platform_fee, processing_fee

    @staticmethod
    def _setting_or_default(settings: Dict[str, str], key: str, default: Decimal) -> Decimal:
        raw = settings.get(key)
        if raw is None:
            return default
        parsed = parse_fee_percentage(raw)
        if parsed is None:
            logger.warning(f"FeeCalculator: ignoring invalid {key}={raw!r}, using {format_fee_percentage(default)}")
            return default
        return parsed

    def get_payer_platform_fee_percentage(self, payer_id: Optional[str]) -> Tuple[Decimal, bool]:
        """Custom fee for the payer if set, otherwise the platform default."""
        if payer_id:
            company = self.ledger.get_company_profile(payer_id)
            if company is not None and company.custom_platform_fee_percentage is not None:
                return Decimal(company.custom_platform_fee_percentage), True

        platform_fee, _ = self.get_platform_fee_settings()
        return platform_fee, False

    def calculate_fees(self, gross_amount: Amount, payer_id: Optional[str] = None) -> FeeBreakdown:
        percentage, is_custom = self.get_payer_platform_fee_percentage(payer_id)
        _, processing_fee = self.get_platform_fee_settings()
        return calculate_fees_with_percentage(
            gross_amount,
            percentage,
            processing_fee_percentage=processing_fee,
            is_custom_fee=is_custom,
        )

    def get_total_fee_percentage(self, payer_id: Optional[str] = None) -> Decimal:
        percentage, _ = self.get_payer_platform_fee_percentage(payer_id)
        _, processing_fee = self.get_platform_fee_settings()
        return percentage + processing_fee
