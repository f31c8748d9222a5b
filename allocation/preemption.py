"""Decide whether a request is allowed, allowed by preempting, or denied."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from allocation.conflicts import ConflictSet
from allocation.models import Booking
from allocation.priority import outranks
from allocation.rules import RuleEngine
from allocation.schema import (
    HARD_CONFLICT_TYPES,
    BookingEvent,
    BookingStatus,
    ConflictRecord,
    ConflictType,
    EventType,
)
from logger import get_logger

logger = get_logger(__name__)


class DecisionKind(str, Enum):
    ALLOW = "allow"
    PREEMPT = "preempt"
    DENY = "deny"


@dataclass
class Decision:
    kind: DecisionKind
    reason: Optional[str] = None
    preemptable: list[ConflictRecord] = field(default_factory=list)
    non_preemptable: list[ConflictRecord] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.kind != DecisionKind.DENY

    @property
    def preempted_booking_ids(self) -> list[str]:
        if self.kind != DecisionKind.PREEMPT:
            return []
        return [record.booking_id for record in self.preemptable if record.booking_id]


class PreemptionResolver:
    @staticmethod
    def annotate(new_priority: int, conflict_set: ConflictSet) -> list[ConflictRecord]:
        """Copy the records, flagging booking conflicts the new priority strictly outranks."""
        annotated: list[ConflictRecord] = []
        for record in conflict_set.records:
            if record.type == ConflictType.EXISTING_BOOKING:
                record = record.model_copy(update={"preemptable": outranks(new_priority, record.priority)})
            annotated.append(record)
        return annotated

    @staticmethod
    def resolve(new_priority: int, conflict_set: ConflictSet, capacity: Optional[int] = None) -> Decision:
        capacity = max(capacity if capacity is not None else conflict_set.capacity, 1)
        annotated = PreemptionResolver.annotate(new_priority, conflict_set)

        hard = [record for record in annotated if record.type in HARD_CONFLICT_TYPES]
        if hard:
            return Decision(
                kind=DecisionKind.DENY,
                reason=hard[0].message,
                conflicts=annotated,
            )

        booking_records = [record for record in annotated if record.type == ConflictType.EXISTING_BOOKING]
        preemptable = [record for record in booking_records if record.preemptable]
        non_preemptable = [record for record in booking_records if not record.preemptable]

        if capacity == 1:
            denied = bool(non_preemptable)
        else:
            denied = len(non_preemptable) + 1 > capacity

        if denied:
            return Decision(
                kind=DecisionKind.DENY,
                reason="Requested slot is held by bookings of equal or higher priority.",
                preemptable=preemptable,
                non_preemptable=non_preemptable,
                conflicts=annotated,
            )

        kind = DecisionKind.PREEMPT if preemptable else DecisionKind.ALLOW
        return Decision(kind=kind, preemptable=preemptable, non_preemptable=non_preemptable, conflicts=annotated)


def apply_preemption(db: Session, decision: Decision, winner: Booking, now: datetime) -> list[BookingEvent]:
    """Move every preemptable holder to preempted inside the caller's transaction."""
    booking_ids = decision.preempted_booking_ids
    if not booking_ids:
        return []

    stmt = select(Booking).where(Booking.id.in_(booking_ids)).order_by(Booking.id.asc()).with_for_update()
    reason = f"Preempted by higher priority booking (Ref: {winner.booking_reference})"
    events: list[BookingEvent] = []
    for loser in db.scalars(stmt):
        RuleEngine.check_transition(loser.status, BookingStatus.PREEMPTED).enforce()
        loser.status = BookingStatus.PREEMPTED.value
        loser.cancellation_reason = reason
        loser.cancelled_by = winner.user_id
        loser.cancelled_at = now
        events.append(
            BookingEvent(
                type=EventType.BOOKING_PREEMPTED,
                booking_id=loser.id,
                booking_reference=loser.booking_reference,
                user_id=loser.user_id,
                resource_id=loser.resource_id,
                occurred_at=now,
                reason=reason,
            )
        )
        logger.info(
            "Booking preempted | booking_id=%s | resource_id=%s | winner=%s",
            loser.id,
            loser.resource_id,
            winner.booking_reference,
        )
    return events
