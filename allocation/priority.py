"""Priority classification for booking requests.

Higher always outranks lower. Equal scores never preempt one another, so
ties are won by whoever already holds the slot.
"""

from __future__ import annotations

from typing import Optional

CATEGORY_BASE_PRIORITY: dict[str, int] = {
    "university_activity": 6,
    "class": 5,
    "staff_meeting": 4,
    "church_meeting": 3,
    "student_meeting": 2,
}
DEFAULT_CATEGORY_PRIORITY = 1

ROLE_BONUS: dict[str, int] = {
    "admin": 3,
    "staff": 2,
    "lecturer": 2,
}


def _normalize(value) -> str:
    if value is None:
        return ""
    raw = getattr(value, "value", value)
    return str(raw).strip().lower()


def classify(role: Optional[str], category: Optional[str]) -> int:
    """Map (requester role, booking category) to an integer priority."""
    base = CATEGORY_BASE_PRIORITY.get(_normalize(category), DEFAULT_CATEGORY_PRIORITY)
    return base + ROLE_BONUS.get(_normalize(role), 0)


def outranks(challenger: int, incumbent: Optional[int]) -> bool:
    if incumbent is None:
        return False
    return challenger > incumbent
