import math
from datetime import datetime

CORE_BASE_RATE = 20
STANDARD_BASE_RATE = 5

GRACE_DAYS = 3
FULL_RATE_DAYS = 4  # days 4..7

def compute_fine(days_overdue: int, is_core: bool) -> int:
    """
    Tiered late fee:
    - days 1-3 cost 20% of the base rate each (grace)
    - days 4-7 cost the full base rate each
    - day 8 onwards costs 200% of the base rate each
    Core resources use a base rate of 20, everything else 5. Rounded up.
    """
    base = CORE_BASE_RATE if is_core else STANDARD_BASE_RATE
    grace = base * 0.2
    days = max(0, days_overdue)

    if days <= GRACE_DAYS:
        fine = days * grace
    elif days <= GRACE_DAYS + FULL_RATE_DAYS:
        fine = GRACE_DAYS * grace + (days - GRACE_DAYS) * base
    else:
        fine = (
            GRACE_DAYS * grace
            + FULL_RATE_DAYS * base
            + (days - GRACE_DAYS - FULL_RATE_DAYS) * base * 2
        )
    return math.ceil(fine)

def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days between due date and now, any started day counts."""
    seconds = abs((now - due_date).total_seconds())
    return math.ceil(seconds / 86400)
