"""Conflict detection for a requested (resource, interval) pair.

The detector runs every source and unions their records. It never stops at
the first hit: the resolver needs the full picture to decide on preemption,
and the suggestion engine uses the same picture to explain a denial.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from allocation.availability import (
    BookingQuery,
    find_bookings,
    local_day_segments,
    overlap_count,
    overlap_minutes,
)
from allocation.exceptions import ConflictDetectionError
from allocation.models import Booking, Resource, ResourceDependency, ResourceIssue, Timetable
from allocation.priority import classify
from allocation.schema import HARD_CONFLICT_TYPES, ConflictRecord, ConflictType, Severity
from logger import get_logger

logger = get_logger(__name__)

OPEN_ISSUE_STATUSES = ("reported", "in_progress")
MAINTENANCE_STATUS = "maintenance"


@dataclass(frozen=True)
class DetectionRequest:
    resource: Resource
    start_time: datetime
    end_time: datetime
    requester_id: Optional[str] = None
    exclude_booking_id: Optional[str] = None
    lock: bool = False


@dataclass
class ConflictSet:
    resource_id: str
    capacity: int
    start_time: datetime
    end_time: datetime
    records: list[ConflictRecord] = field(default_factory=list)

    @property
    def blocking(self) -> list[ConflictRecord]:
        return [record for record in self.records if record.type in HARD_CONFLICT_TYPES]

    @property
    def booking_conflicts(self) -> list[ConflictRecord]:
        return [record for record in self.records if record.type == ConflictType.EXISTING_BOOKING]

    @property
    def informational(self) -> list[ConflictRecord]:
        return [
            record
            for record in self.records
            if record.type not in HARD_CONFLICT_TYPES and record.type != ConflictType.EXISTING_BOOKING
        ]

    @property
    def has_blocking(self) -> bool:
        return any(record.type in HARD_CONFLICT_TYPES for record in self.records)

    def of_type(self, conflict_type: ConflictType) -> list[ConflictRecord]:
        return [record for record in self.records if record.type == conflict_type]


class ConflictSource(Protocol):
    name: str

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        ...


class MaintenanceSource:
    name = "maintenance"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        if resource.status != MAINTENANCE_STATUS:
            return []
        return [
            ConflictRecord(
                type=ConflictType.MAINTENANCE,
                severity=Severity.HIGH,
                blocking=True,
                resource_id=resource.id,
                message=f"{resource.name} is currently under maintenance.",
                suggestion="Check back later or choose a different resource.",
            )
        ]


class ResourceIssueSource:
    name = "resource_issue"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        stmt = (
            select(ResourceIssue)
            .where(
                ResourceIssue.resource_id == resource.id,
                ResourceIssue.status.in_(OPEN_ISSUE_STATUSES),
            )
            .order_by(ResourceIssue.id.asc())
        )
        return [
            ConflictRecord(
                type=ConflictType.RESOURCE_ISSUE,
                severity=Severity.HIGH,
                blocking=True,
                resource_id=resource.id,
                issue_id=issue.id,
                message=f"Resource issue: {issue.subject}",
                suggestion="Contact facilities management or choose a different resource.",
            )
            for issue in db.scalars(stmt)
        ]


class FixedScheduleSource:
    name = "fixed_schedule"

    def __init__(self, tz_name: str = "UTC") -> None:
        self._tz_name = tz_name

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        records: list[ConflictRecord] = []
        for day, seg_start, seg_end in local_day_segments(request.start_time, request.end_time, self._tz_name):
            stmt = (
                select(Timetable)
                .where(
                    Timetable.resource_id == resource.id,
                    Timetable.day_of_week == day.isoweekday(),
                    Timetable.end_time > seg_start,
                )
                .order_by(Timetable.start_time.asc(), Timetable.id.asc())
            )
            if seg_end is not None:
                stmt = stmt.where(Timetable.start_time < seg_end)
            for entry in db.scalars(stmt):
                label = entry.course_code or "scheduled class"
                records.append(
                    ConflictRecord(
                        type=ConflictType.FIXED_SCHEDULE,
                        severity=Severity.HIGH,
                        blocking=True,
                        resource_id=resource.id,
                        timetable_id=entry.id,
                        message=(
                            f"Fixed schedule conflict on {day.isoformat()}: {label} "
                            f"{entry.start_time.strftime('%H:%M')}-{entry.end_time.strftime('%H:%M')}."
                        ),
                        suggestion="This slot is reserved for scheduled classes. Choose a different time.",
                    )
                )
        return records


class ExistingBookingSource:
    name = "existing_booking"

    def __init__(self, classifier: Callable[[Optional[str], Optional[str]], int] = classify) -> None:
        self._classifier = classifier

    def holder_priority(self, booking: Booking) -> Optional[int]:
        if booking.priority is not None:
            return booking.priority
        if booking.user is None:
            logger.warning("Booking %s has no holder; treating it as non-preemptable", booking.id)
            return None
        return self._classifier(booking.user.role, booking.category)

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        overlaps = find_bookings(
            db,
            BookingQuery.overlapping(
                resource_id=resource.id,
                start_time=request.start_time,
                end_time=request.end_time,
                exclude_booking_id=request.exclude_booking_id,
                lock=request.lock,
            ),
        )
        records: list[ConflictRecord] = []
        for booking in overlaps:
            minutes = overlap_minutes(request.start_time, request.end_time, booking.start_time, booking.end_time)
            records.append(
                ConflictRecord(
                    type=ConflictType.EXISTING_BOOKING,
                    severity=Severity.MEDIUM,
                    blocking=False,
                    resource_id=resource.id,
                    booking_id=booking.id,
                    holder_id=booking.user_id,
                    priority=self.holder_priority(booking),
                    conflict_start=booking.start_time,
                    conflict_end=booking.end_time,
                    message=(
                        f"Time slot already booked ({booking.booking_reference}, "
                        f"{booking.category}, overlap {minutes:.0f} min)."
                    ),
                    suggestion="Choose a different time slot or resource.",
                )
            )
        return records


class SharedEquipmentSource:
    name = "shared_equipment"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        if not resource.location:
            return []
        stmt = (
            select(Resource)
            .where(
                Resource.location == resource.location,
                Resource.category == resource.category,
                Resource.id != resource.id,
            )
            .order_by(Resource.id.asc())
        )
        shared = list(db.scalars(stmt))
        if not shared:
            return []

        by_id = {item.id: item for item in shared}
        overlaps = find_bookings(
            db,
            BookingQuery(
                resource_ids=tuple(by_id),
                window_start=request.start_time,
                window_end=request.end_time,
                exclude_booking_id=request.exclude_booking_id,
            ),
        )
        return [
            ConflictRecord(
                type=ConflictType.SHARED_EQUIPMENT,
                severity=Severity.LOW,
                blocking=False,
                resource_id=resource.id,
                related_resource_id=booking.resource_id,
                booking_id=booking.id,
                holder_id=booking.user_id,
                conflict_start=booking.start_time,
                conflict_end=booking.end_time,
                message=f"Shared equipment at {resource.location} is in use by {by_id[booking.resource_id].name}.",
                suggestion=f"Consider {by_id[booking.resource_id].name} at another time, or a different slot.",
            )
            for booking in overlaps
        ]


class DependentResourceSource:
    name = "dependent_resource"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        stmt = (
            select(Resource)
            .join(ResourceDependency, ResourceDependency.depends_on_id == Resource.id)
            .where(ResourceDependency.resource_id == resource.id)
            .order_by(Resource.id.asc())
        )
        records: list[ConflictRecord] = []
        for dependency in db.scalars(stmt):
            busy = overlap_count(
                db,
                resource_id=dependency.id,
                start_time=request.start_time,
                end_time=request.end_time,
                exclude_booking_id=request.exclude_booking_id,
            )
            unavailable = busy >= max(dependency.capacity, 1) or dependency.status == MAINTENANCE_STATUS
            if unavailable:
                records.append(
                    ConflictRecord(
                        type=ConflictType.DEPENDENT_RESOURCE,
                        severity=Severity.HIGH,
                        blocking=True,
                        resource_id=resource.id,
                        related_resource_id=dependency.id,
                        message=f"Required resource {dependency.name} is not available.",
                        suggestion=f"Make sure {dependency.name} is free before booking {resource.name}.",
                    )
                )
        return records


class RequesterScheduleSource:
    name = "requester_double_booking"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        if not request.requester_id:
            return []
        overlaps = find_bookings(
            db,
            BookingQuery(
                user_id=request.requester_id,
                window_start=request.start_time,
                window_end=request.end_time,
                exclude_booking_id=request.exclude_booking_id,
            ),
        )
        return [
            ConflictRecord(
                type=ConflictType.REQUESTER_DOUBLE_BOOKING,
                severity=Severity.LOW,
                blocking=False,
                resource_id=request.resource.id,
                related_resource_id=booking.resource_id,
                booking_id=booking.id,
                holder_id=booking.user_id,
                conflict_start=booking.start_time,
                conflict_end=booking.end_time,
                message=f"You have another booking at this time ({booking.booking_reference}).",
                suggestion="Cancel or modify your existing booking first.",
            )
            for booking in overlaps
        ]


class CapacitySource:
    name = "capacity"

    def collect(self, db: Session, request: DetectionRequest) -> list[ConflictRecord]:
        resource = request.resource
        if resource.capacity <= 1:
            return []
        count = overlap_count(
            db,
            resource_id=resource.id,
            start_time=request.start_time,
            end_time=request.end_time,
            exclude_booking_id=request.exclude_booking_id,
        )
        if count < resource.capacity:
            return []
        return [
            ConflictRecord(
                type=ConflictType.CAPACITY,
                severity=Severity.MEDIUM,
                blocking=False,
                resource_id=resource.id,
                message=f"Resource capacity ({resource.capacity}) is fully utilised by {count} bookings.",
                suggestion="Choose a different time slot or a resource with spare capacity.",
            )
        ]


def default_sources(tz_name: str = "UTC") -> list[ConflictSource]:
    return [
        MaintenanceSource(),
        ResourceIssueSource(),
        FixedScheduleSource(tz_name),
        ExistingBookingSource(),
        SharedEquipmentSource(),
        DependentResourceSource(),
        RequesterScheduleSource(),
        CapacitySource(),
    ]


class ConflictDetector:
    def __init__(self, sources: Optional[Sequence[ConflictSource]] = None, tz_name: str = "UTC") -> None:
        self._sources = list(sources) if sources is not None else default_sources(tz_name)

    def detect(
        self,
        db: Session,
        *,
        resource: Resource,
        start_time: datetime,
        end_time: datetime,
        requester_id: Optional[str] = None,
        exclude_booking_id: Optional[str] = None,
        lock: bool = False,
    ) -> ConflictSet:
        request = DetectionRequest(
            resource=resource,
            start_time=start_time,
            end_time=end_time,
            requester_id=requester_id,
            exclude_booking_id=exclude_booking_id,
            lock=lock,
        )
        conflict_set = ConflictSet(
            resource_id=resource.id,
            capacity=resource.capacity,
            start_time=start_time,
            end_time=end_time,
        )
        for source in self._sources:
            try:
                conflict_set.records.extend(source.collect(db, request))
            except SQLAlchemyError as exc:
                raise ConflictDetectionError(source.name, str(exc)) from exc

        logger.debug(
            "Conflicts detected | resource_id=%s | start=%s | end=%s | blocking=%s | bookings=%s | informational=%s",
            resource.id,
            start_time.isoformat(),
            end_time.isoformat(),
            len(conflict_set.blocking),
            len(conflict_set.booking_conflicts),
            len(conflict_set.informational),
        )
        return conflict_set
