"""Rule evaluation logic for booking requests and status transitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from allocation.exceptions import BookingValidationError, PermissionDeniedError
from allocation.models import Booking, Resource, User
from allocation.schema import BookingCategory, BookingStatus

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {
            BookingStatus.APPROVED,
            BookingStatus.REJECTED,
            BookingStatus.CANCELLED,
            BookingStatus.PREEMPTED,
            BookingStatus.EXPIRED,
        }
    ),
    BookingStatus.APPROVED: frozenset(
        {
            BookingStatus.IN_USE,
            BookingStatus.CANCELLED,
            BookingStatus.PREEMPTED,
            BookingStatus.EXPIRED,
        }
    ),
    BookingStatus.IN_USE: frozenset(
        {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
            BookingStatus.PREEMPTED,
            BookingStatus.EXPIRED,
        }
    ),
}

ADMIN_ROLE = "admin"


@dataclass
class RuleCheckResult:
    allowed: bool
    rule: str = ""
    reason: str | None = None

    def enforce(self) -> None:
        if not self.allowed:
            raise BookingValidationError(self.rule, self.reason or "Booking rule violated.")


def is_admin(user: Optional[User]) -> bool:
    return bool(user and (user.role or "").strip().lower() == ADMIN_ROLE)


class RuleEngine:
    @staticmethod
    def check_interval(start_time: datetime, end_time: datetime) -> RuleCheckResult:
        if end_time <= start_time:
            return RuleCheckResult(allowed=False, rule="interval", reason="End time must be after start time.")
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_min_duration(start_time: datetime, end_time: datetime, min_minutes: int) -> RuleCheckResult:
        if end_time - start_time < timedelta(minutes=min_minutes):
            return RuleCheckResult(
                allowed=False,
                rule="min_duration",
                reason=f"Booking duration must be at least {min_minutes} minutes.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_not_in_past(start_time: datetime, now: datetime, grace_minutes: int) -> RuleCheckResult:
        if start_time < now - timedelta(minutes=grace_minutes):
            return RuleCheckResult(allowed=False, rule="past_booking", reason="Booking start time must be in the future.")
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_category(category) -> tuple[Optional[BookingCategory], RuleCheckResult]:
        try:
            return BookingCategory(getattr(category, "value", category)), RuleCheckResult(allowed=True)
        except ValueError:
            allowed = ", ".join(item.value for item in BookingCategory)
            return None, RuleCheckResult(
                allowed=False,
                rule="category",
                reason=f"Unknown booking category {category!r}. Choose from: {allowed}.",
            )

    @staticmethod
    def check_resource_bookable(resource: Resource) -> RuleCheckResult:
        if not resource.is_active:
            return RuleCheckResult(
                allowed=False,
                rule="resource_inactive",
                reason="The selected resource is currently not active.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_active_limit(active_count: int, max_active: int) -> RuleCheckResult:
        if active_count >= max_active:
            return RuleCheckResult(
                allowed=False,
                rule="max_active_bookings",
                reason=f"You have reached the maximum limit of {max_active} active bookings.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_transition(current: str, target: BookingStatus) -> RuleCheckResult:
        try:
            current_status = BookingStatus(current)
        except ValueError:
            return RuleCheckResult(allowed=False, rule="status", reason=f"Unknown booking status {current!r}.")

        if target not in ALLOWED_TRANSITIONS.get(current_status, frozenset()):
            return RuleCheckResult(
                allowed=False,
                rule="status_transition",
                reason=f"Cannot move a {current_status.value} booking to {target.value}.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_modifiable(booking: Booking) -> RuleCheckResult:
        try:
            current_status = BookingStatus(booking.status)
        except ValueError:
            current_status = None
        if current_status not in ALLOWED_TRANSITIONS:
            return RuleCheckResult(
                allowed=False,
                rule="status_transition",
                reason=f"Cannot modify a {booking.status} booking.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_not_finished(booking: Booking, now: datetime) -> RuleCheckResult:
        if booking.end_time <= now:
            return RuleCheckResult(
                allowed=False,
                rule="booking_finished",
                reason="Cannot cancel bookings that have already ended.",
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def initial_status(resource: Resource) -> BookingStatus:
        return BookingStatus.PENDING if resource.special_approval else BookingStatus.APPROVED

    @staticmethod
    def require_owner_or_admin(actor: Optional[User], booking: Booking) -> None:
        if actor is None:
            raise PermissionDeniedError("Unknown actor.")
        if actor.id != booking.user_id and not is_admin(actor):
            raise PermissionDeniedError("Booking does not belong to this user.")

    @staticmethod
    def require_admin(actor: Optional[User]) -> None:
        if not is_admin(actor):
            raise PermissionDeniedError("Only administrators can perform this action.")
