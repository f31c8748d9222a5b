from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

import allocation.engine as engine_module
from allocation.availability import ACTIVE_STATUS_VALUES
from allocation.engine import BookingLifecycleManager
from allocation.models import Booking, Resource, ResourceIssue
from allocation.schema import EventType, Outcome, SuggestionKind


def _hours(base: datetime, start: float, end: float) -> tuple[datetime, datetime]:
    return base + timedelta(hours=start), base + timedelta(hours=end)


def _peak_concurrency(bookings) -> int:
    # ends sort before starts at the same instant
    edges = sorted([(b.start_time, 1) for b in bookings] + [(b.end_time, -1) for b in bookings])
    current = peak = 0
    for _, delta in edges:
        current += delta
        peak = max(peak, current)
    return peak


def test_higher_priority_request_preempts_lower_holder(manager, notifier, load_booking, base_time) -> None:
    a_start, a_end = _hours(base_time, 0, 1)
    holder = manager.create_booking("room-a", "u-student", a_start, a_end, "student_meeting")
    assert holder.outcome == Outcome.CREATED
    assert holder.booking.priority == 2
    assert holder.booking.status.value == "approved"

    b_start, b_end = _hours(base_time, 0.5, 1.5)
    challenger = manager.create_booking("room-a", "u-staff", b_start, b_end, "staff_meeting")

    assert challenger.success
    assert challenger.outcome == Outcome.CREATED
    assert challenger.booking.status.value == "approved"
    assert challenger.booking.priority == 6
    assert challenger.preempted_booking_ids == [holder.booking.id]
    assert [item.type for item in challenger.events] == [EventType.BOOKING_CREATED, EventType.BOOKING_PREEMPTED]

    loser = load_booking(holder.booking.id)
    assert loser.status == "preempted"
    assert loser.priority < challenger.booking.priority
    assert challenger.booking.booking_reference in loser.cancellation_reason
    assert notifier.events[-1].type == EventType.BOOKING_PREEMPTED


def test_lower_priority_request_is_denied_with_suggestions(manager, notifier, base_time) -> None:
    a_start, a_end = _hours(base_time, 0, 1)
    manager.create_booking("room-a", "u-student", a_start, a_end, "student_meeting")

    c_start, c_end = _hours(base_time, 0.5, 1.5)
    result = manager.create_booking("room-a", "u-student2", c_start, c_end, "other")

    assert not result.success
    assert result.outcome == Outcome.DENIED
    assert [record.type.value for record in result.conflicts] == ["existing_booking"]
    offered = {(item.kind, item.resource_id, item.start_time) for item in result.suggestions}
    assert (SuggestionKind.SHIFTED_LATER, "room-a", base_time + timedelta(hours=1)) in offered
    assert any(item.kind == SuggestionKind.ALTERNATIVE_RESOURCE and item.resource_id == "room-b" for item in result.suggestions)

    assert [item.type for item in result.events] == [EventType.BOOKING_REJECTED]
    assert notifier.events[-1].suggestions == result.suggestions


def test_capacity_three_allows_third_and_denies_fourth(manager, seeded, base_time) -> None:
    start, end = _hours(base_time, 0, 2)
    assert manager.create_booking("hall", "u-admin", start, end, "university_activity").success
    assert manager.create_booking("hall", "u-staff", start, end, "staff_meeting").success

    third = manager.create_booking("hall", "u-student", start, end, "student_meeting")
    assert third.outcome == Outcome.CREATED
    assert third.preempted_booking_ids == []

    fourth = manager.create_booking("hall", "u-student2", start, end, "other")
    assert fourth.outcome == Outcome.DENIED

    with seeded() as db:
        active = list(
            db.scalars(select(Booking).where(Booking.resource_id == "hall", Booking.status.in_(ACTIVE_STATUS_VALUES)))
        )
    assert _peak_concurrency(active) <= 3


def test_equal_priority_keeps_incumbent(manager, load_booking, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    first = manager.create_booking("room-a", "u-student", start, end, "student_meeting")
    second = manager.create_booking("room-a", "u-student2", start, end, "student_meeting")

    assert second.outcome == Outcome.DENIED
    assert load_booking(first.booking.id).status == "approved"


def test_failed_commit_leaves_holders_untouched(engine, seeded, config, notifier, load_booking, base_time) -> None:
    manager = BookingLifecycleManager(session_factory=seeded, config=config, notifier=notifier)
    start, end = _hours(base_time, 0, 1)
    holder = manager.create_booking("room-a", "u-student", start, end, "student_meeting")

    failing = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @event.listens_for(failing, "before_commit")
    def _fail(session):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    broken = BookingLifecycleManager(session_factory=failing, config=config, notifier=notifier)
    events_before = len(notifier.events)
    result = broken.create_booking("room-a", "u-staff", start, end, "staff_meeting")

    assert result.outcome == Outcome.ERROR
    assert load_booking(holder.booking.id).status == "approved"
    with seeded() as db:
        assert db.scalar(select(Booking).where(Booking.user_id == "u-staff")) is None
    assert len(notifier.events) == events_before


def test_version_conflicts_are_retried(manager, monkeypatch, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    manager.create_booking("room-a", "u-student", start, end, "student_meeting")

    real_apply = engine_module.apply_preemption
    calls = {"count": 0}

    def flaky(db, decision, winner, now):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StaleDataError("row was updated concurrently")
        return real_apply(db, decision, winner, now)

    monkeypatch.setattr(engine_module, "apply_preemption", flaky)
    result = manager.create_booking("room-a", "u-staff", start, end, "staff_meeting")

    assert calls["count"] == 2
    assert result.outcome == Outcome.CREATED
    assert len(result.preempted_booking_ids) == 1


def test_persistent_version_conflicts_surface_as_error(manager, monkeypatch, load_booking, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    holder = manager.create_booking("room-a", "u-student", start, end, "student_meeting")

    def always_stale(db, decision, winner, now):
        raise StaleDataError("row was updated concurrently")

    monkeypatch.setattr(engine_module, "apply_preemption", always_stale)
    result = manager.create_booking("room-a", "u-staff", start, end, "staff_meeting")

    assert result.outcome == Outcome.ERROR
    assert result.rule == "transaction_conflict"
    assert load_booking(holder.booking.id).status == "approved"


def test_expire_overdue_is_idempotent(manager, make_booking, load_booking) -> None:
    now = datetime.now(timezone.utc)
    overdue = [
        make_booking("room-a", "u-student", now - timedelta(hours=3), now - timedelta(hours=2)),
        make_booking("hall", "u-staff", now - timedelta(hours=2), now - timedelta(hours=1), status="in_use"),
        make_booking("lab", "u-student", now - timedelta(hours=2), now - timedelta(hours=1), status="pending"),
    ]
    upcoming = make_booking("room-a", "u-student", now + timedelta(hours=1), now + timedelta(hours=2))

    assert manager.expire_overdue(now) == 3
    states = {booking_id: load_booking(booking_id).status for booking_id in overdue + [upcoming]}
    assert manager.expire_overdue(now) == 0
    assert states == {booking_id: load_booking(booking_id).status for booking_id in overdue + [upcoming]}
    assert states[upcoming] == "approved"
    assert {states[booking_id] for booking_id in overdue} == {"expired"}


@pytest.mark.parametrize(
    ("requester", "category", "expected"),
    [
        ("u-staff", "staff_meeting", True),
        ("u-student2", "other", False),
        ("u-student2", "student_meeting", False),
    ],
)
def test_availability_agrees_with_create(manager, base_time, requester, category, expected) -> None:
    start, end = _hours(base_time, 0, 1)
    manager.create_booking("room-a", "u-student", start, end, "student_meeting")

    check_start, check_end = _hours(base_time, 0.5, 1.5)
    availability = manager.check_availability("room-a", check_start, check_end, requester_id=requester, category=category)
    created = manager.create_booking("room-a", requester, check_start, check_end, category)

    assert availability.available is expected
    assert created.success is expected


def test_availability_reports_preemptable_holders(manager, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    holder = manager.create_booking("room-a", "u-student", start, end, "student_meeting")

    result = manager.check_availability("room-a", start, end, requester_id="u-staff", category="staff_meeting")
    assert result.available
    assert result.priority == 6
    assert result.preemptable_booking_ids == [holder.booking.id]


def test_availability_applies_request_rules(manager, base_time) -> None:
    result = manager.check_availability("room-a", base_time, base_time + timedelta(minutes=10))
    assert not result.available
    assert "30 minutes" in result.reason

    missing = manager.check_availability("nowhere", base_time, base_time + timedelta(hours=1))
    assert not missing.available


def test_validation_failures_are_invalid_outcomes(manager, seeded, base_time) -> None:
    short = manager.create_booking("room-a", "u-student", base_time, base_time + timedelta(minutes=20))
    assert short.outcome == Outcome.INVALID
    assert short.rule == "min_duration"

    past_start = datetime.now(timezone.utc) - timedelta(hours=2)
    past = manager.create_booking("room-a", "u-student", past_start, past_start + timedelta(hours=1))
    assert past.rule == "past_booking"

    backwards = manager.create_booking("room-a", "u-student", base_time, base_time - timedelta(hours=1))
    assert backwards.rule == "interval"

    unknown_category = manager.create_booking("room-a", "u-student", base_time, base_time + timedelta(hours=1), "party")
    assert unknown_category.rule == "category"

    with seeded() as db:
        with db.begin():
            db.get(Resource, "room-b").is_active = False
    inactive = manager.create_booking("room-b", "u-student", base_time, base_time + timedelta(hours=1))
    assert inactive.rule == "resource_inactive"


def test_unknown_entities_are_not_found(manager, base_time) -> None:
    end = base_time + timedelta(hours=1)
    assert manager.create_booking("nowhere", "u-student", base_time, end).outcome == Outcome.NOT_FOUND
    assert manager.create_booking("room-a", "ghost", base_time, end).outcome == Outcome.NOT_FOUND
    assert manager.cancel_booking("missing", "u-student", "no longer needed").outcome == Outcome.NOT_FOUND


def test_active_booking_limit(seeded, notifier, config, base_time) -> None:
    manager = BookingLifecycleManager(session_factory=seeded, config=replace(config, max_active_bookings=2), notifier=notifier)
    for offset in range(2):
        start, end = _hours(base_time, offset * 2, offset * 2 + 1)
        assert manager.create_booking("room-a", "u-student", start, end).success

    start, end = _hours(base_time, 6, 7)
    result = manager.create_booking("room-a", "u-student", start, end)
    assert result.outcome == Outcome.INVALID
    assert result.rule == "max_active_bookings"


def test_maintenance_resource_is_denied(manager, seeded, base_time) -> None:
    with seeded() as db:
        with db.begin():
            db.get(Resource, "room-a").status = "maintenance"

    result = manager.create_booking("room-a", "u-admin", base_time, base_time + timedelta(hours=1), "university_activity")
    assert result.outcome == Outcome.DENIED
    assert result.conflicts[0].type.value == "maintenance"
    assert all(item.resource_id != "room-a" for item in result.suggestions)
    alternatives = {item.resource_id for item in result.suggestions if item.kind == SuggestionKind.ALTERNATIVE_RESOURCE}
    assert alternatives == {"room-b", "room-c"}


def test_open_issue_offers_alternative_resources(manager, seeded, base_time) -> None:
    with seeded() as db:
        with db.begin():
            db.add(ResourceIssue(resource_id="room-a", subject="Projector broken", status="reported"))

    result = manager.create_booking("room-a", "u-student", base_time, base_time + timedelta(hours=1), "student_meeting")
    assert result.outcome == Outcome.DENIED
    assert [item.kind for item in result.suggestions] == [SuggestionKind.ALTERNATIVE_RESOURCE] * 2
    assert result.suggestions[0].resource_id == "room-c"


def test_update_moves_booking_and_recomputes_priority(manager, notifier, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    created = manager.create_booking("room-a", "u-staff", start, end, "other")
    assert created.booking.priority == 3

    new_start, new_end = _hours(base_time, 3, 4)
    updated = manager.update_booking(created.booking.id, "u-staff", new_start, new_end, "staff_meeting")

    assert updated.outcome == Outcome.UPDATED
    assert updated.booking.start_time == new_start
    assert updated.booking.priority == 6
    assert notifier.events[-1].type == EventType.BOOKING_UPDATED


def test_update_does_not_conflict_with_itself(manager, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    created = manager.create_booking("room-a", "u-student", start, end)
    widened = manager.update_booking(created.booking.id, "u-student", start, end + timedelta(minutes=30))
    assert widened.outcome == Outcome.UPDATED


def test_update_into_a_stronger_holder_is_denied(manager, load_booking, base_time) -> None:
    start, end = _hours(base_time, 0, 1)
    manager.create_booking("room-a", "u-staff", start, end, "staff_meeting")
    mine = manager.create_booking("room-a", "u-student", *_hours(base_time, 2, 3))

    result = manager.update_booking(mine.booking.id, "u-student", start, end)
    assert result.outcome == Outcome.DENIED
    assert load_booking(mine.booking.id).start_time == base_time + timedelta(hours=2)


def test_update_requires_owner_or_admin(manager, base_time) -> None:
    created = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))
    new_start, new_end = _hours(base_time, 2, 3)

    assert manager.update_booking(created.booking.id, "u-student2", new_start, new_end).outcome == Outcome.FORBIDDEN
    assert manager.update_booking(created.booking.id, "u-admin", new_start, new_end).outcome == Outcome.UPDATED


def test_terminal_bookings_cannot_change(manager, base_time) -> None:
    created = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))
    cancelled = manager.cancel_booking(created.booking.id, "u-student", "Plans changed")
    assert cancelled.outcome == Outcome.CANCELLED
    assert cancelled.booking.cancellation_reason == "Plans changed"

    again = manager.cancel_booking(created.booking.id, "u-student", "Again")
    assert again.outcome == Outcome.INVALID
    assert again.rule == "status_transition"

    moved = manager.update_booking(created.booking.id, "u-student", *_hours(base_time, 2, 3))
    assert moved.outcome == Outcome.INVALID


def test_cancel_requires_reason(manager, base_time) -> None:
    created = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))
    result = manager.cancel_booking(created.booking.id, "u-student", "   ")
    assert result.rule == "cancellation_reason"


def test_approval_flow(manager, notifier, base_time) -> None:
    created = manager.create_booking("lab", "u-student", *_hours(base_time, 0, 1), "class")
    assert created.booking.status.value == "pending"

    assert manager.approve_booking(created.booking.id, "u-student").outcome == Outcome.FORBIDDEN

    approved = manager.approve_booking(created.booking.id, "u-admin", notes="Safety briefing done")
    assert approved.outcome == Outcome.APPROVED
    assert notifier.events[-1].type == EventType.BOOKING_APPROVED

    in_use = manager.mark_in_use(created.booking.id, "u-admin")
    assert in_use.booking.status.value == "in_use"
    completed = manager.complete_booking(created.booking.id, "u-admin")
    assert completed.outcome == Outcome.COMPLETED

    assert manager.reject_booking(created.booking.id, "u-admin", "Too late").outcome == Outcome.INVALID


def test_rejection_of_pending_booking(manager, notifier, load_booking, base_time) -> None:
    created = manager.create_booking("lab", "u-student", *_hours(base_time, 0, 1), "class")

    assert manager.reject_booking(created.booking.id, "u-admin", "").rule == "rejection_reason"
    rejected = manager.reject_booking(created.booking.id, "u-admin", "Lab reserved for exams")

    assert rejected.outcome == Outcome.REJECTED
    stored = load_booking(created.booking.id)
    assert stored.rejection_reason == "Lab reserved for exams"
    assert stored.rejected_by == "u-admin"
    assert notifier.events[-1].type == EventType.BOOKING_REJECTED


def test_cancel_bookings_collects_errors(manager, base_time) -> None:
    first = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))
    second = manager.create_booking("room-b", "u-student", *_hours(base_time, 0, 1))

    result = manager.cancel_bookings([first.booking.id, second.booking.id, "missing"], "u-admin", "Building closed")
    assert result.cancelled_count == 2
    assert result.total_requested == 3
    assert len(result.errors) == 1
    assert result.errors[0].startswith("missing")


def test_failing_notifier_does_not_undo_booking(seeded, config, load_booking, base_time) -> None:
    class ExplodingNotifier:
        def emit(self, event):
            raise ConnectionError("mail server down")

    manager = BookingLifecycleManager(session_factory=seeded, config=config, notifier=ExplodingNotifier())
    result = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))

    assert result.outcome == Outcome.CREATED
    assert load_booking(result.booking.id).status == "approved"


def test_naive_times_are_read_in_schedule_timezone(seeded, notifier, config, base_time) -> None:
    manager = BookingLifecycleManager(
        session_factory=seeded, config=replace(config, schedule_timezone="Africa/Nairobi"), notifier=notifier
    )
    local_start = base_time.replace(tzinfo=None)
    result = manager.create_booking("room-a", "u-student", local_start, local_start + timedelta(hours=1))

    assert result.booking.start_time == base_time - timedelta(hours=3)


def test_booking_reference_format(manager, base_time) -> None:
    result = manager.create_booking("room-a", "u-student", *_hours(base_time, 0, 1))
    prefix, marker, day, suffix = result.booking.booking_reference.split("-")
    assert prefix == "ROO"
    assert marker == "RBA"
    assert len(day) == 8
    assert len(suffix) == 6
