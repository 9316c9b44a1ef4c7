import html
import logging
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from dateutil import parser as dateutil_parser

from tally.errors import InvalidAmount
from tally.models import TransactionType

logger = logging.getLogger(__name__)

# Tried in order. Day-first wins for ambiguous dates like 03/04/2025.
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d")

_SPACES = re.compile(r"\s+")
_CURRENCY = re.compile(r"[€$£¥]|EUR|USD|GBP", re.IGNORECASE)
_TAGS = re.compile(r"<(script|style)\b.*?</\1\s*>|<[^>]*>", re.IGNORECASE | re.DOTALL)
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")


def parse_date(raw: str | date | None) -> str | None:
    """Return an ISO date for a known format or free text, None if unparseable."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = raw.strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    try:
        return dateutil_parser.parse(text, dayfirst=True).strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return None


def normalize_date(raw: str | date | None, today: date | None = None) -> tuple[str, bool]:
    """Normalize a date, falling back to today.

    Returns ``(iso_date, fell_back)`` so callers can flag rows whose date
    could not be read.
    """
    parsed = parse_date(raw)
    if parsed is not None:
        return parsed, False
    fallback = (today or date.today()).isoformat()
    logger.warning("Unparseable date %r, using %s", raw, fallback)
    return fallback, True


def parse_amount(raw: str | int | float | Decimal) -> Decimal:
    """Parse a signed amount written with comma or dot decimals.

    Spaces are thousands separators. When both ``,`` and ``.`` appear, the
    rightmost one is the decimal separator.
    """
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))
    text = _CURRENCY.sub("", _SPACES.sub("", raw or "")).replace("'", "")
    if text.startswith("+"):
        text = text[1:]
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise InvalidAmount(f"Unparseable amount: {raw!r}") from None
    if not value.is_finite():
        raise InvalidAmount(f"Unparseable amount: {raw!r}")
    return value


def split_amount(value: Decimal) -> tuple[Decimal, TransactionType]:
    """Return the magnitude and the transaction type implied by the sign."""
    kind = TransactionType.EXPENSE if value < 0 else TransactionType.INCOME
    return abs(value), kind


def sanitize_text(raw: str | None) -> str:
    """Strip markup and control characters, collapse whitespace."""
    if not raw:
        return ""
    text = _TAGS.sub("", str(raw))
    text = html.unescape(text)
    text = _TAGS.sub("", text).replace("<", "").replace(">", "")
    text = _CONTROL.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def fold(text: str) -> str:
    """Case- and accent-insensitive form used for keyword comparisons."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))
