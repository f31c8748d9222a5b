"""Range queries and interval arithmetic for bookings.

Every booking lookup the engine performs goes through ``BookingQuery``: the
caller describes what it needs and ``booking_query`` turns it into a fixed
SELECT. Nothing else builds booking filters on the fly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session

from allocation.models import Booking
from allocation.schema import ACTIVE_STATUSES, BookingStatus

ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


@dataclass(frozen=True)
class BookingQuery:
    resource_ids: Sequence[str] = ()
    user_id: Optional[str] = None
    statuses: Sequence[str] = ACTIVE_STATUS_VALUES
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    exclude_booking_id: Optional[str] = None
    lock: bool = False

    @classmethod
    def overlapping(
        cls,
        *,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[str] = None,
        lock: bool = False,
    ) -> "BookingQuery":
        return cls(
            resource_ids=(resource_id,),
            window_start=start_time,
            window_end=end_time,
            exclude_booking_id=exclude_booking_id,
            lock=lock,
        )


def booking_query(spec: BookingQuery) -> Select:
    stmt = select(Booking)
    if spec.resource_ids:
        stmt = stmt.where(Booking.resource_id.in_(list(spec.resource_ids)))
    if spec.user_id is not None:
        stmt = stmt.where(Booking.user_id == spec.user_id)
    if spec.statuses:
        stmt = stmt.where(Booking.status.in_(list(spec.statuses)))
    if spec.window_end is not None:
        stmt = stmt.where(Booking.start_time < spec.window_end)
    if spec.window_start is not None:
        stmt = stmt.where(Booking.end_time > spec.window_start)
    if spec.exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != spec.exclude_booking_id)
    stmt = stmt.order_by(Booking.start_time.asc(), Booking.id.asc())
    if spec.lock:
        stmt = stmt.with_for_update()
    return stmt


def find_bookings(db: Session, spec: BookingQuery) -> list[Booking]:
    return list(db.scalars(booking_query(spec)))


def overlap_count(
    db: Session,
    *,
    resource_id,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: Optional[str] = None,
) -> int:
    stmt = (
        select(func.count())
        .select_from(Booking)
        .where(
            Booking.resource_id == resource_id,
            Booking.status.in_(ACTIVE_STATUS_VALUES),
            Booking.start_time < end_time,
            Booking.end_time > start_time,
        )
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return int(db.scalar(stmt) or 0)


def recent_usage_counts(db: Session, *, resource_ids: Iterable[str], since: datetime) -> dict[str, int]:
    ids = list(resource_ids)
    if not ids:
        return {}
    stmt = (
        select(Booking.resource_id, func.count(Booking.id))
        .where(Booking.resource_id.in_(ids), Booking.start_time >= since)
        .group_by(Booking.resource_id)
    )
    counts = {resource_id: 0 for resource_id in ids}
    for resource_id, count in db.execute(stmt):
        counts[resource_id] = int(count)
    return counts


def active_booking_count(db: Session, *, user_id: str, now: datetime, exclude_booking_id: Optional[str] = None) -> int:
    stmt = (
        select(func.count())
        .select_from(Booking)
        .where(
            Booking.user_id == user_id,
            Booking.status.in_(ACTIVE_STATUS_VALUES),
            Booking.end_time > now,
        )
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return int(db.scalar(stmt) or 0)


def expire_overdue_bookings(db: Session, *, resource_id: str, now: datetime) -> int:
    """Compare-and-set sweep: only rows still active and already ended move to expired."""
    stmt = (
        update(Booking)
        .where(
            Booking.resource_id == resource_id,
            Booking.status.in_(ACTIVE_STATUS_VALUES),
            Booking.end_time < now,
        )
        .values(status=BookingStatus.EXPIRED.value, updated_at=now, version_id=Booking.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    return int(result.rowcount or 0)


def overdue_resource_ids(db: Session, *, now: datetime) -> list[str]:
    stmt = (
        select(Booking.resource_id)
        .where(Booking.status.in_(ACTIVE_STATUS_VALUES), Booking.end_time < now)
        .distinct()
        .order_by(Booking.resource_id)
    )
    return list(db.scalars(stmt))


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def overlap_minutes(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> float:
    start = max(a_start, b_start)
    end = min(a_end, b_end)
    if end <= start:
        return 0.0
    return (end - start).total_seconds() / 60


def gap_minutes(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> float:
    """Minutes of free time between two intervals, 0 when they touch or overlap."""
    if a_end <= b_start:
        return (b_start - a_end).total_seconds() / 60
    if b_end <= a_start:
        return (a_start - b_end).total_seconds() / 60
    return 0.0


def local_day_segments(start_time: datetime, end_time: datetime, tz_name: str) -> list[tuple[date, time, Optional[time]]]:
    """Split an interval into per-day (date, start, end) pieces in the given zone.

    An end of ``None`` means the piece runs to midnight.
    """
    try:
        zone = ZoneInfo(tz_name)
    except Exception:
        zone = ZoneInfo("UTC")

    local_start = start_time.astimezone(zone)
    local_end = end_time.astimezone(zone)
    segments: list[tuple[date, time, Optional[time]]] = []
    cursor = local_start
    while cursor < local_end:
        next_midnight = datetime.combine(cursor.date() + timedelta(days=1), time(0), tzinfo=zone)
        if local_end < next_midnight:
            segments.append((cursor.date(), cursor.time(), local_end.time()))
            break
        segments.append((cursor.date(), cursor.time(), None))
        cursor = next_midnight
    return segments
