"""
Helpers shared by adapters when turning provider payloads into NormalizedLine.
None of these raise on bad input; they log and fall back.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

# Bounds of bank_statement_lines.debit/credit (Numeric(15, 2)) and .reference (String(255)).
MAX_AMOUNT = Decimal("9999999999999.99")
MAX_REFERENCE_LENGTH = 255

# Formats seen in provider payloads besides ISO 8601.
_EXTRA_DATE_FORMATS = (
    "%Y%m%d%H%M%S",  # M-Pesa TransactionDate
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
)


def provider_zone(name: str) -> timezone | ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown provider timezone {name!r}, using UTC")
        return timezone.utc


def parse_provider_datetime(value: Any, tz: timezone | ZoneInfo) -> datetime:
    """
    Parse a provider-local date/datetime into an aware UTC datetime.

    Naive values are interpreted in the provider's timezone. Unparseable
    values fall back to the current time.
    """
    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif value is not None:
        text = str(value).strip()
        # Explicit formats first; fromisoformat may misread compact timestamps as ISO basic form.
        for fmt in _EXTRA_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None

    if parsed is None:
        logger.warning(f"Could not parse provider date {value!r}, using current time")
        return datetime.now(timezone.utc)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        logger.warning(f"Provider date {value!r} is out of range, using current time")
        return datetime.now(timezone.utc)


def parse_amount(value: Any) -> Decimal:
    """Absolute monetary amount rounded to cents; 0 when unparseable or out of range."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        amount = Decimal(str(value).replace(",", "").strip())
        if not amount.is_finite():
            raise ValueError("not a finite number")
        amount = abs(amount).quantize(Decimal("0.01"))
    except (ArithmeticError, ValueError):
        # InvalidOperation is an ArithmeticError; quantize raises it past 28 digits.
        logger.warning(f"Could not parse amount {value!r}, using 0")
        return Decimal("0.00")
    if amount > MAX_AMOUNT:
        logger.warning(f"Amount {value!r} exceeds {MAX_AMOUNT}, using 0")
        return Decimal("0.00")
    return amount


def bounded_reference(prefix: str, value: Any) -> str:
    """Provider id as text; ids too long to store are replaced by a stable digest."""
    text = str(value)
    if len(text) <= MAX_REFERENCE_LENGTH:
        return text
    logger.warning(f"{prefix} reference of {len(text)} characters replaced by its digest")
    return f"{prefix}-{hashlib.sha256(text.encode('utf-8')).hexdigest()}"


def fallback_reference(prefix: str, raw: Dict[str, Any]) -> str:
    """Deterministic reference for payloads that carry no provider id."""
    digest = hashlib.sha256(
        json.dumps(raw, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"{prefix}-{digest[:32]}"


def text_or_placeholder(value: Any, placeholder: str) -> str:
    if value is None:
        return placeholder
    text = str(value).strip()
    return text or placeholder
