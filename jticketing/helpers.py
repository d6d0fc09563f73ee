import re
import secrets
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from zoneinfo import ZoneInfo


FULL_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_ONLY_FORMAT = "%Y-%m-%d"
LOG_DATE_FORMAT = "%Y%m%d%H%M%S"

CENT = Decimal("0.01")


# ----------------------------
# Helpers
# ----------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def malaysia_now(tz: str) -> datetime:
    return utcnow().astimezone(ZoneInfo(tz))


def malaysia_stamp(tz: str, fmt: str = FULL_DATETIME_FORMAT) -> str:
    return malaysia_now(tz).strftime(fmt)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        # SQLite hands back naive datetimes; we only ever store UTC
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def parse_date_strict(value: str) -> date:
    """Parse ``yyyy-mm-dd`` and nothing else (no times, no short forms)."""
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value or ""):
        raise ValueError(f"invalid date format: {value!r}")
    return datetime.strptime(value, DATE_ONLY_FORMAT).date()


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_money(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return money(value)
    except (InvalidOperation, ValueError):
        return None


def format_money(value: Decimal) -> str:
    return f"{money(value):.2f}"


def new_reference(prefix: str, tz: str) -> str:
    # <PREFIX>-YYYYMMDDhhmmss-NNNN
    stamp = malaysia_stamp(tz, LOG_DATE_FORMAT)
    return f"{prefix}-{stamp}-{secrets.randbelow(10000):04d}"


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None
