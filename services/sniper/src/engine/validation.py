"""Checks shared by bid creation, updates and the placement phase."""

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Tuple

from .errors import ConflictError, ValidationError

MIN_BID_AMOUNT = 100
MAX_BID_AMOUNT = 10_000_000

# A new bid needs strictly more than this much time before the auction ends
CREATE_MIN_REMAINING = timedelta(seconds=10)
# The placement phase only needs the auction to still be open
PLACEMENT_MIN_REMAINING = timedelta(0)

ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# (status, action) -> next status
TRANSITIONS: Dict[Tuple[str, str], str] = {
    ("pending", "CREATE"): "pending",
    ("pending", "UPDATE"): "pending",
    ("pending", "CANCEL"): "cancelled",
    ("pending", "PLACE"): "placed",
    ("pending", "FAIL"): "failed",
    ("placed", "WIN"): "won",
    ("placed", "LOSE"): "lost",
}


def as_utc(value: datetime) -> datetime:
    # Naive datetimes come back from JSON documents written without an offset
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Bid amount must be an integer number of minor units, got {amount!r}")
    if amount < MIN_BID_AMOUNT or amount > MAX_BID_AMOUNT:
        raise ValidationError(
            f"Bid amount {amount} outside allowed range {MIN_BID_AMOUNT}..{MAX_BID_AMOUNT}"
        )


def validate_item_id(item_id: str) -> None:
    if not isinstance(item_id, str) or not ITEM_ID_PATTERN.match(item_id):
        raise ValidationError(f"Invalid marketplace item id: {item_id!r}")


def validate_time_remaining(end_time: datetime, now: datetime, minimum: timedelta) -> None:
    remaining = as_utc(end_time) - as_utc(now)
    if remaining <= minimum:
        if remaining <= timedelta(0):
            raise ValidationError("Auction has already ended")
        raise ValidationError(
            f"Only {remaining.total_seconds():.1f}s left before the auction ends; "
            f"more than {minimum.total_seconds():.0f}s required"
        )


def validate_exceeds_price(amount: int, current_price: int) -> None:
    if amount <= current_price:
        raise ValidationError(f"Bid amount {amount} does not exceed current price {current_price}")


def next_status(current: str, action: str) -> str:
    """Status reached by applying *action* in *current*, or ConflictError."""
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise ConflictError(f"Cannot {action.lower()} a bid that is {current}") from None
