"""
Utility functions for timestamps and phone numbers.

All stored timestamps use a fixed-width ISO-8601 UTC format so they sort and
compare correctly as plain strings.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Epoch values above this are treated as milliseconds
_EPOCH_MS_THRESHOLD = 100_000_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(moment: datetime) -> str:
    """Format a datetime as `YYYY-MM-DDTHH:MM:SSZ`, naive values taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(value: Any) -> Optional[datetime]:
    """
    Parse a provider-reported time into an aware UTC datetime.

    Accepts:
    - datetime objects
    - unix epoch seconds or milliseconds (int, float or numeric string)
    - ISO-8601 strings, with or without a trailing Z
    - "YYYY-MM-DD HH:MM:SS" strings

    Returns:
        Aware datetime in UTC, or None if the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, (int, float)):
        moment = _from_epoch(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if re.fullmatch(r"\d+(\.\d+)?", text):
            moment = _from_epoch(float(text))
        else:
            if text.endswith("Z") or text.endswith("z"):
                text = text[:-1] + "+00:00"
            try:
                moment = datetime.fromisoformat(text)
            except ValueError:
                logger.debug(f"Unparseable timestamp: {value!r}")
                return None
    else:
        return None

    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _from_epoch(value: float) -> Optional[datetime]:
    if value > _EPOCH_MS_THRESHOLD:
        value = value / 1000
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug(f"Epoch value out of range: {value}")
        return None


def digits_only(phone_number: str) -> str:
    """Strip everything but digits (drops +, spaces, dashes)."""
    return re.sub(r"[^0-9]", "", phone_number or "")


def mask_token(token: Optional[str]) -> Optional[str]:
    """Mask all but the last four characters of a provider token."""
    if not token:
        return token
    if len(token) <= 4:
        return "*" * len(token)
    return "*" * (len(token) - 4) + token[-4:]
