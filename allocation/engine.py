"""Booking lifecycle operations: create, update, cancel, approve and expire.

Every mutating operation runs as one unit of work: the in-process lock for the
affected resource, row locks on the resource and its bookings, and a single
``db.begin()`` transaction. Optimistic version conflicts are retried a bounded
number of times. Events are dispatched only after the transaction commits.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from allocation.availability import active_booking_count, expire_overdue_bookings, overdue_resource_ids
from allocation.conflicts import ConflictDetector
from allocation.events import LoggingNotifier, NotificationPort, dispatch_events
from allocation.exceptions import (
    BookingValidationError,
    ConflictDetectionError,
    NotFoundError,
    PermissionDeniedError,
    TransactionConflictError,
)
from allocation.locking import ResourceLockRegistry
from allocation.models import Booking, Resource, User, utcnow
from allocation.preemption import Decision, DecisionKind, PreemptionResolver, apply_preemption
from allocation.priority import classify
from allocation.rules import RuleEngine
from allocation.schema import (
    AvailabilityResult,
    BatchCancelResult,
    BookingCategory,
    BookingEvent,
    BookingResult,
    BookingStatus,
    BookingView,
    EventType,
    Outcome,
)
from allocation.suggestions import SuggestionEngine
from config import EngineConfig, get_settings
from logger import get_logger

logger = get_logger(__name__)

REFERENCE_MARKER = "RBA"


def _to_utc(dt: datetime, tz_name: str) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)

    try:
        zone = ZoneInfo(tz_name)
    except Exception:
        zone = ZoneInfo("UTC")

    return dt.replace(tzinfo=zone).astimezone(timezone.utc)


def booking_reference(resource: Resource, now: datetime) -> str:
    prefix = re.sub(r"[^A-Z0-9]", "", (resource.name or "").upper())[:3] or "BKG"
    return f"{prefix}-{REFERENCE_MARKER}-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def _event(event_type: EventType, booking: Booking, now: datetime, reason: Optional[str] = None) -> BookingEvent:
    return BookingEvent(
        type=event_type,
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        user_id=booking.user_id,
        resource_id=booking.resource_id,
        occurred_at=now,
        reason=reason,
    )


class BookingLifecycleManager:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        config: Optional[EngineConfig] = None,
        notifier: Optional[NotificationPort] = None,
        locks: Optional[ResourceLockRegistry] = None,
        detector: Optional[ConflictDetector] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._config = config or EngineConfig.from_settings(get_settings())
        self._notifier = notifier or LoggingNotifier()
        self._locks = locks or ResourceLockRegistry()
        self._detector = detector or ConflictDetector(tz_name=self._config.schedule_timezone)
        self._suggestions = SuggestionEngine(self._detector, self._config)
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _booking_resource_ids(self, booking_ids: Iterable[str]) -> list[str]:
        ids = [booking_id for booking_id in booking_ids if booking_id]
        if not ids:
            return []
        with self._session_factory() as db:
            stmt = select(Booking.resource_id).where(Booking.id.in_(ids)).distinct()
            return list(db.scalars(stmt))

    def _execute(
        self,
        operation: str,
        lock_ids: Callable[[], list[str]],
        work: Callable[[Session, datetime], BookingResult],
    ) -> BookingResult:
        attempts = self._config.max_transaction_retries
        try:
            resource_ids = lock_ids()
            with self._locks.hold(*resource_ids):
                for attempt in range(1, attempts + 1):
                    now = self._clock()
                    try:
                        with self._session_factory() as db:
                            with db.begin():
                                result = work(db, now)
                    except StaleDataError:
                        logger.warning(
                            "Concurrent modification | operation=%s | attempt=%s/%s",
                            operation,
                            attempt,
                            attempts,
                        )
                        continue
                    dispatch_events(self._notifier, result.events)
                    return result
                raise TransactionConflictError(",".join(resource_ids), attempts)
        except BookingValidationError as exc:
            logger.info("Booking rejected by rule | operation=%s | rule=%s | reason=%s", operation, exc.rule, exc.message)
            return BookingResult(success=False, outcome=Outcome.INVALID, reason=exc.message, rule=exc.rule)
        except NotFoundError as exc:
            return BookingResult(success=False, outcome=Outcome.NOT_FOUND, reason=str(exc))
        except PermissionDeniedError as exc:
            return BookingResult(success=False, outcome=Outcome.FORBIDDEN, reason=str(exc))
        except TransactionConflictError as exc:
            logger.error("Transaction conflict | operation=%s | %s", operation, exc)
            return BookingResult(success=False, outcome=Outcome.ERROR, reason=str(exc), rule="transaction_conflict")
        except ConflictDetectionError as exc:
            logger.exception("Conflict detection failed | operation=%s | source=%s", operation, exc.source)
            return BookingResult(
                success=False,
                outcome=Outcome.ERROR,
                reason=f"Conflict detection failed while trying to {operation}.",
                rule="conflict_detection",
            )
        except SQLAlchemyError:
            logger.exception("Database error | operation=%s", operation)
            return BookingResult(success=False, outcome=Outcome.ERROR, reason=f"Database error while trying to {operation}.")

    def _load_user(self, db: Session, user_id: Optional[str]) -> User:
        user = db.get(User, user_id) if user_id else None
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def _load_resource(self, db: Session, resource_id: str, lock: bool = False) -> Resource:
        stmt = select(Resource).where(Resource.id == resource_id)
        if lock:
            stmt = stmt.with_for_update()
        resource = db.scalar(stmt)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return resource

    def _load_booking(self, db: Session, booking_id: str) -> Booking:
        booking = db.scalar(select(Booking).where(Booking.id == booking_id).with_for_update())
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    def _validate_request(
        self,
        db: Session,
        *,
        resource: Resource,
        holder: Optional[User],
        start_time: datetime,
        end_time: datetime,
        category,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
        check_past: bool = True,
    ) -> tuple[BookingCategory, int]:
        """Rule checks shared by create, update and availability. Returns (category, priority)."""
        config = self._config
        resolved_category, category_check = RuleEngine.check_category(category)
        category_check.enforce()
        RuleEngine.check_interval(start_time, end_time).enforce()
        RuleEngine.check_min_duration(start_time, end_time, config.min_booking_minutes).enforce()
        if check_past:
            RuleEngine.check_not_in_past(start_time, now, config.start_grace_minutes).enforce()
        RuleEngine.check_resource_bookable(resource).enforce()
        if holder is not None:
            active = active_booking_count(db, user_id=holder.id, now=now, exclude_booking_id=exclude_booking_id)
            RuleEngine.check_active_limit(active, config.max_active_bookings).enforce()
        priority = classify(holder.role if holder else None, resolved_category)
        return resolved_category, priority

    def _decide(
        self,
        db: Session,
        *,
        resource: Resource,
        start_time: datetime,
        end_time: datetime,
        requester_id: Optional[str],
        priority: int,
        exclude_booking_id: Optional[str] = None,
        lock: bool = False,
    ):
        conflict_set = self._detector.detect(
            db,
            resource=resource,
            start_time=start_time,
            end_time=end_time,
            requester_id=requester_id,
            exclude_booking_id=exclude_booking_id,
            lock=lock,
        )
        return conflict_set, PreemptionResolver.resolve(priority, conflict_set, resource.capacity)

    def _log_decision(self, operation: str, resource: Resource, requester_id, priority: int, decision: Decision) -> None:
        logger.info(
            "Booking decision | operation=%s | resource_id=%s | requester_id=%s | priority=%s | decision=%s | preempted=%s",
            operation,
            resource.id,
            requester_id,
            priority,
            decision.kind.value,
            len(decision.preempted_booking_ids),
        )

    def create_booking(
        self,
        resource_id: str,
        requester_id: str,
        start_time: datetime,
        end_time: datetime,
        category=BookingCategory.OTHER,
        purpose: Optional[str] = None,
        attachment_ref: Optional[str] = None,
    ) -> BookingResult:
        tz_name = self._config.schedule_timezone
        start_time = _to_utc(start_time, tz_name)
        end_time = _to_utc(end_time, tz_name)

        def work(db: Session, now: datetime) -> BookingResult:
            requester = self._load_user(db, requester_id)
            resource = self._load_resource(db, resource_id, lock=True)
            resolved_category, priority = self._validate_request(
                db,
                resource=resource,
                holder=requester,
                start_time=start_time,
                end_time=end_time,
                category=category,
                now=now,
            )
            conflict_set, decision = self._decide(
                db,
                resource=resource,
                start_time=start_time,
                end_time=end_time,
                requester_id=requester.id,
                priority=priority,
                lock=True,
            )
            self._log_decision("create", resource, requester.id, priority, decision)

            if decision.kind == DecisionKind.DENY:
                suggestions = self._suggestions.suggest(
                    db,
                    requester=requester,
                    resource=resource,
                    start_time=start_time,
                    end_time=end_time,
                    priority=priority,
                    now=now,
                    conflict_set=conflict_set,
                )
                event = BookingEvent(
                    type=EventType.BOOKING_REJECTED,
                    user_id=requester.id,
                    resource_id=resource.id,
                    occurred_at=now,
                    reason=decision.reason,
                    suggestions=suggestions,
                )
                return BookingResult(
                    success=False,
                    outcome=Outcome.DENIED,
                    reason=decision.reason,
                    conflicts=decision.conflicts,
                    suggestions=suggestions,
                    events=[event],
                )

            status = RuleEngine.initial_status(resource)
            booking = Booking(
                id=str(uuid.uuid4()),
                booking_reference=booking_reference(resource, now),
                resource_id=resource.id,
                user_id=requester.id,
                start_time=start_time,
                end_time=end_time,
                category=resolved_category.value,
                purpose=purpose,
                status=status.value,
                priority=priority,
                supporting_document_path=attachment_ref,
                approved_at=now if status == BookingStatus.APPROVED else None,
            )
            db.add(booking)
            db.flush()

            events = [_event(EventType.BOOKING_CREATED, booking, now)]
            events.extend(apply_preemption(db, decision, booking, now))
            db.flush()

            return BookingResult(
                success=True,
                outcome=Outcome.CREATED,
                booking=BookingView.model_validate(booking),
                preempted_booking_ids=decision.preempted_booking_ids,
                conflicts=decision.conflicts,
                events=events,
            )

        return self._execute("create booking", lambda: [resource_id], work)

    def update_booking(
        self,
        booking_id: str,
        actor_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        category=None,
    ) -> BookingResult:
        tz_name = self._config.schedule_timezone
        if (start_time is None) != (end_time is None):
            return BookingResult(
                success=False,
                outcome=Outcome.INVALID,
                rule="interval",
                reason="start_time and end_time must be provided together.",
            )
        if start_time is None and category is None:
            return BookingResult(success=False, outcome=Outcome.INVALID, rule="empty_update", reason="Nothing to update.")

        new_start = _to_utc(start_time, tz_name) if start_time is not None else None
        new_end = _to_utc(end_time, tz_name) if end_time is not None else None

        def work(db: Session, now: datetime) -> BookingResult:
            booking = self._load_booking(db, booking_id)
            actor = db.get(User, actor_id)
            RuleEngine.require_owner_or_admin(actor, booking)
            RuleEngine.check_modifiable(booking).enforce()

            resource = self._load_resource(db, booking.resource_id, lock=True)
            holder = booking.user
            interval_changed = new_start is not None
            target_start = new_start if interval_changed else booking.start_time
            target_end = new_end if interval_changed else booking.end_time
            resolved_category, priority = self._validate_request(
                db,
                resource=resource,
                holder=holder,
                start_time=target_start,
                end_time=target_end,
                category=category if category is not None else booking.category,
                now=now,
                exclude_booking_id=booking.id,
                check_past=interval_changed,
            )
            conflict_set, decision = self._decide(
                db,
                resource=resource,
                start_time=target_start,
                end_time=target_end,
                requester_id=booking.user_id,
                priority=priority,
                exclude_booking_id=booking.id,
                lock=True,
            )
            self._log_decision("update", resource, booking.user_id, priority, decision)

            if decision.kind == DecisionKind.DENY:
                suggestions = self._suggestions.suggest(
                    db,
                    requester=holder,
                    resource=resource,
                    start_time=target_start,
                    end_time=target_end,
                    priority=priority,
                    now=now,
                    conflict_set=conflict_set,
                    exclude_booking_id=booking.id,
                )
                return BookingResult(
                    success=False,
                    outcome=Outcome.DENIED,
                    reason=decision.reason,
                    booking=BookingView.model_validate(booking),
                    conflicts=decision.conflicts,
                    suggestions=suggestions,
                )

            booking.start_time = target_start
            booking.end_time = target_end
            booking.category = resolved_category.value
            booking.priority = priority
            db.flush()

            events = [_event(EventType.BOOKING_UPDATED, booking, now)]
            events.extend(apply_preemption(db, decision, booking, now))
            db.flush()

            return BookingResult(
                success=True,
                outcome=Outcome.UPDATED,
                booking=BookingView.model_validate(booking),
                preempted_booking_ids=decision.preempted_booking_ids,
                conflicts=decision.conflicts,
                events=events,
            )

        return self._execute("update booking", lambda: self._booking_resource_ids([booking_id]), work)

    def cancel_booking(self, booking_id: str, actor_id: str, reason: str) -> BookingResult:
        def work(db: Session, now: datetime) -> BookingResult:
            booking = self._load_booking(db, booking_id)
            actor = db.get(User, actor_id)
            RuleEngine.require_owner_or_admin(actor, booking)
            RuleEngine.check_transition(booking.status, BookingStatus.CANCELLED).enforce()
            RuleEngine.check_not_finished(booking, now).enforce()

            cleaned = (reason or "").strip()
            if not cleaned:
                raise BookingValidationError("cancellation_reason", "A cancellation reason is required.")

            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = cleaned
            booking.cancelled_by = actor.id
            booking.cancelled_at = now
            db.flush()

            return BookingResult(
                success=True,
                outcome=Outcome.CANCELLED,
                booking=BookingView.model_validate(booking),
                events=[_event(EventType.BOOKING_CANCELLED, booking, now, cleaned)],
            )

        return self._execute("cancel booking", lambda: self._booking_resource_ids([booking_id]), work)

    def cancel_bookings(self, booking_ids: Iterable[str], actor_id: str, reason: str) -> BatchCancelResult:
        ids = list(dict.fromkeys(booking_ids))
        cancelled = 0
        errors: list[str] = []
        for booking_id in ids:
            result = self.cancel_booking(booking_id, actor_id, reason)
            if result.success:
                cancelled += 1
            else:
                errors.append(f"{booking_id}: {result.reason}")
        logger.info("Batch cancel | actor_id=%s | requested=%s | cancelled=%s", actor_id, len(ids), cancelled)
        return BatchCancelResult(cancelled_count=cancelled, total_requested=len(ids), errors=errors)

    def _transition(
        self,
        operation: str,
        booking_id: str,
        actor_id: str,
        target: BookingStatus,
        outcome: Outcome,
        event_type: EventType,
        apply: Callable[[Booking, User, datetime], Optional[str]],
    ) -> BookingResult:
        def work(db: Session, now: datetime) -> BookingResult:
            booking = self._load_booking(db, booking_id)
            actor = db.get(User, actor_id)
            RuleEngine.require_admin(actor)
            RuleEngine.check_transition(booking.status, target).enforce()

            reason = apply(booking, actor, now)
            booking.status = target.value
            db.flush()

            return BookingResult(
                success=True,
                outcome=outcome,
                booking=BookingView.model_validate(booking),
                events=[_event(event_type, booking, now, reason)],
            )

        return self._execute(operation, lambda: self._booking_resource_ids([booking_id]), work)

    def approve_booking(self, booking_id: str, actor_id: str, notes: Optional[str] = None) -> BookingResult:
        def apply(booking: Booking, actor: User, now: datetime) -> Optional[str]:
            booking.approved_by = actor.id
            booking.approved_at = now
            return notes

        return self._transition(
            "approve booking", booking_id, actor_id, BookingStatus.APPROVED, Outcome.APPROVED, EventType.BOOKING_APPROVED, apply
        )

    def reject_booking(self, booking_id: str, actor_id: str, reason: str) -> BookingResult:
        cleaned = (reason or "").strip()
        if not cleaned:
            return BookingResult(
                success=False,
                outcome=Outcome.INVALID,
                rule="rejection_reason",
                reason="A rejection reason is required.",
            )

        def apply(booking: Booking, actor: User, now: datetime) -> Optional[str]:
            booking.rejection_reason = cleaned
            booking.rejected_by = actor.id
            booking.rejected_at = now
            return cleaned

        return self._transition(
            "reject booking", booking_id, actor_id, BookingStatus.REJECTED, Outcome.REJECTED, EventType.BOOKING_REJECTED, apply
        )

    def mark_in_use(self, booking_id: str, actor_id: str) -> BookingResult:
        return self._transition(
            "mark booking in use",
            booking_id,
            actor_id,
            BookingStatus.IN_USE,
            Outcome.IN_USE,
            EventType.BOOKING_UPDATED,
            lambda booking, actor, now: "Booking marked as in use.",
        )

    def complete_booking(self, booking_id: str, actor_id: str) -> BookingResult:
        return self._transition(
            "complete booking",
            booking_id,
            actor_id,
            BookingStatus.COMPLETED,
            Outcome.COMPLETED,
            EventType.BOOKING_UPDATED,
            lambda booking, actor, now: "Booking completed.",
        )

    def check_availability(
        self,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        requester_id: Optional[str] = None,
        category=None,
        exclude_booking_id: Optional[str] = None,
    ) -> AvailabilityResult:
        tz_name = self._config.schedule_timezone
        start_time = _to_utc(start_time, tz_name)
        end_time = _to_utc(end_time, tz_name)

        def unavailable(reason: str) -> AvailabilityResult:
            return AvailabilityResult(
                available=False,
                reason=reason,
                resource_id=resource_id,
                start_time=start_time,
                end_time=end_time,
            )

        now = self._clock()
        try:
            with self._session_factory() as db:
                resource = self._load_resource(db, resource_id)
                requester = self._load_user(db, requester_id) if requester_id else None
                _, priority = self._validate_request(
                    db,
                    resource=resource,
                    holder=requester,
                    start_time=start_time,
                    end_time=end_time,
                    category=category if category is not None else BookingCategory.OTHER,
                    now=now,
                    exclude_booking_id=exclude_booking_id,
                )
                _, decision = self._decide(
                    db,
                    resource=resource,
                    start_time=start_time,
                    end_time=end_time,
                    requester_id=requester_id,
                    priority=priority,
                    exclude_booking_id=exclude_booking_id,
                )
        except (BookingValidationError, NotFoundError) as exc:
            return unavailable(str(exc))
        except ConflictDetectionError as exc:
            logger.exception("Conflict detection failed | operation=check availability | source=%s", exc.source)
            return unavailable("Conflict detection failed while checking availability.")
        except SQLAlchemyError:
            logger.exception("Database error | operation=check availability")
            return unavailable("Database error while checking availability.")

        return AvailabilityResult(
            available=decision.allowed,
            reason=decision.reason,
            resource_id=resource_id,
            start_time=start_time,
            end_time=end_time,
            priority=priority,
            preemptable_booking_ids=decision.preempted_booking_ids,
            conflicts=decision.conflicts,
        )

    def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Move every active booking whose end has passed to expired. Safe to call repeatedly."""
        now = now or self._clock()
        with self._session_factory() as db:
            resource_ids = overdue_resource_ids(db, now=now)

        expired = 0
        for resource_id in resource_ids:
            with self._locks.hold(resource_id):
                try:
                    with self._session_factory() as db:
                        with db.begin():
                            expired += expire_overdue_bookings(db, resource_id=resource_id, now=now)
                except SQLAlchemyError:
                    logger.exception("Database error | operation=expire overdue | resource_id=%s", resource_id)
                    raise

        logger.info("Expiry sweep | resources=%s | expired=%s", len(resource_ids), expired)
        return expired
