"""Alternative slots and resources for a denied request.

Every candidate is validated with the same detector and resolver that
``create_booking`` uses, and is only offered when it would be allowed without
preempting anyone. Exploration is bounded by ``max_candidates``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from allocation.availability import BookingQuery, find_bookings, gap_minutes, intervals_overlap, recent_usage_counts
from allocation.conflicts import ConflictDetector, ConflictSet
from allocation.models import Booking, Resource, User
from allocation.preemption import DecisionKind, PreemptionResolver
from allocation.rules import RuleEngine
from allocation.schema import ConflictType, Suggestion, SuggestionKind
from config import EngineConfig
from logger import get_logger

logger = get_logger(__name__)

MAINTENANCE_STATUS = "maintenance"

# no time shift clears these
UNSHIFTABLE_CONFLICT_TYPES = frozenset({ConflictType.MAINTENANCE, ConflictType.RESOURCE_ISSUE})


@dataclass
class _Candidate:
    kind: SuggestionKind
    resource: Resource
    start_time: datetime
    end_time: datetime
    similarity: float


@dataclass
class _Budget:
    limit: int
    examined: int = 0
    seen: set = field(default_factory=set)

    @property
    def exhausted(self) -> bool:
        return self.examined >= self.limit


def feature_similarity(requested: Resource, candidate: Resource) -> float:
    if candidate.id == requested.id:
        return 100.0
    wanted = requested.feature_set
    if not wanted:
        return 100.0 if candidate.category == requested.category else 0.0
    matching = len(wanted & candidate.feature_set)
    return matching / len(wanted) * 100


def _preferred_hours(times) -> set[int]:
    hours: set[int] = set()
    for value in times or []:
        try:
            hours.add(int(str(value).split(":")[0]))
        except ValueError:
            continue
    return hours


def preference_score(preferences: Optional[dict], resource: Resource, start_time: datetime, tz_name: str = "UTC") -> float:
    if not preferences:
        return 0.0

    score = 0.0
    if resource.category and resource.category in (preferences.get("categories") or []):
        score += 2
    if resource.location and resource.location in (preferences.get("locations") or []):
        score += 2

    preferred_capacity = preferences.get("capacity")
    if isinstance(preferred_capacity, int) and resource.capacity >= preferred_capacity:
        score += 1

    wanted_features = {str(tag).strip().lower() for tag in preferences.get("features") or []}
    score += len(wanted_features & resource.feature_set)

    try:
        zone = ZoneInfo(tz_name)
    except Exception:
        zone = ZoneInfo("UTC")
    if start_time.astimezone(zone).hour in _preferred_hours(preferences.get("times")):
        score += 1
    return score


class SuggestionEngine:
    def __init__(self, detector: ConflictDetector, config: Optional[EngineConfig] = None) -> None:
        self._detector = detector
        self._config = config or EngineConfig()

    def suggest(
        self,
        db: Session,
        *,
        requester: Optional[User],
        resource: Resource,
        start_time: datetime,
        end_time: datetime,
        priority: int,
        now: datetime,
        conflict_set: Optional[ConflictSet] = None,
        exclude_booking_id: Optional[str] = None,
    ) -> list[Suggestion]:
        config = self._config
        budget = _Budget(limit=config.max_candidates)
        requester_id = requester.id if requester else None
        context = dict(
            requester_id=requester_id,
            priority=priority,
            now=now,
            exclude_booking_id=exclude_booking_id,
        )

        candidates: list[_Candidate] = []
        shiftable = time_shift_can_help(resource, conflict_set)
        if shiftable:
            candidates.extend(self._shifted(db, budget, resource, start_time, end_time, **context))
        candidates.extend(self._alternative_resources(db, budget, resource, start_time, end_time, **context))
        if shiftable:
            if conflict_set is not None:
                candidates.extend(self._minor_overlap(db, budget, resource, conflict_set, **context))
            # the forward scan may use up whatever budget remains
            candidates.extend(self._next_available(db, budget, resource, start_time, end_time, **context))

        candidates = self._filter_by_requester_schedule(db, candidates, requester_id, now, exclude_booking_id)
        suggestions = self._rank(db, candidates, requester, now)
        logger.info(
            "Suggestions built | resource_id=%s | examined=%s | offered=%s",
            resource.id,
            budget.examined,
            len(suggestions),
        )
        return suggestions

    def _is_free(
        self,
        db: Session,
        budget: _Budget,
        resource: Resource,
        start_time: datetime,
        end_time: datetime,
        *,
        requester_id: Optional[str],
        priority: int,
        now: datetime,
        exclude_booking_id: Optional[str],
    ) -> bool:
        key = (resource.id, start_time, end_time)
        if key in budget.seen or budget.exhausted:
            return False
        budget.seen.add(key)

        if not RuleEngine.check_not_in_past(start_time, now, self._config.start_grace_minutes).allowed:
            return False
        if not RuleEngine.check_resource_bookable(resource).allowed:
            return False

        budget.examined += 1
        conflict_set = self._detector.detect(
            db,
            resource=resource,
            start_time=start_time,
            end_time=end_time,
            requester_id=requester_id,
            exclude_booking_id=exclude_booking_id,
        )
        return PreemptionResolver.resolve(priority, conflict_set, resource.capacity).kind == DecisionKind.ALLOW

    def _shifted(self, db, budget, resource, start_time, end_time, **context) -> list[_Candidate]:
        found: list[_Candidate] = []
        for minutes in self._config.shift_minutes:
            delta = timedelta(minutes=minutes)
            for kind, shifted_start in (
                (SuggestionKind.SHIFTED_EARLIER, start_time - delta),
                (SuggestionKind.SHIFTED_LATER, start_time + delta),
            ):
                shifted_end = shifted_start + (end_time - start_time)
                if self._is_free(db, budget, resource, shifted_start, shifted_end, **context):
                    found.append(_Candidate(kind, resource, shifted_start, shifted_end, 100.0))
        return found

    def _next_available(self, db, budget, resource, start_time, end_time, **context) -> list[_Candidate]:
        duration = end_time - start_time
        step = timedelta(minutes=self._config.step_minutes)
        horizon = start_time + timedelta(days=self._config.horizon_days)
        cursor = start_time + step
        while cursor <= horizon and not budget.exhausted:
            if self._is_free(db, budget, resource, cursor, cursor + duration, **context):
                return [_Candidate(SuggestionKind.NEXT_AVAILABLE, resource, cursor, cursor + duration, 100.0)]
            cursor += step
        return []

    def _alternative_resources(self, db, budget, resource, start_time, end_time, **context) -> list[_Candidate]:
        stmt = (
            select(Resource)
            .where(
                Resource.id != resource.id,
                Resource.is_active.is_(True),
                Resource.status != MAINTENANCE_STATUS,
            )
            .order_by(Resource.id.asc())
        )
        wanted = resource.feature_set
        related = [
            other
            for other in db.scalars(stmt)
            if (resource.category and other.category == resource.category) or (wanted & other.feature_set)
        ]
        if not related:
            return []

        # least used first
        usage = recent_usage_counts(
            db,
            resource_ids=[other.id for other in related],
            since=context["now"] - timedelta(days=self._config.usage_lookback_days),
        )
        related.sort(key=lambda other: (usage.get(other.id, 0), other.id))

        found: list[_Candidate] = []
        for other in related:
            if budget.exhausted:
                break
            if self._is_free(db, budget, other, start_time, end_time, **context):
                found.append(
                    _Candidate(
                        SuggestionKind.ALTERNATIVE_RESOURCE,
                        other,
                        start_time,
                        end_time,
                        feature_similarity(resource, other),
                    )
                )
        return found

    def _minor_overlap(self, db, budget, resource, conflict_set: ConflictSet, **context) -> list[_Candidate]:
        """Trim the request around holders that only clip its edges."""
        if not only_minor_overlaps(conflict_set, self._config.minor_overlap_minutes):
            return []

        start_time, end_time = conflict_set.start_time, conflict_set.end_time
        trimmed_start, trimmed_end = start_time, end_time
        for record in conflict_set.booking_conflicts:
            if record.conflict_start <= start_time:
                trimmed_start = max(trimmed_start, record.conflict_end)
            else:
                trimmed_end = min(trimmed_end, record.conflict_start)

        if trimmed_end - trimmed_start < timedelta(minutes=self._config.min_booking_minutes):
            return []
        if self._is_free(db, budget, resource, trimmed_start, trimmed_end, **context):
            return [_Candidate(SuggestionKind.MINOR_OVERLAP, resource, trimmed_start, trimmed_end, 100.0)]
        return []

    def _filter_by_requester_schedule(
        self,
        db: Session,
        candidates: list[_Candidate],
        requester_id: Optional[str],
        now: datetime,
        exclude_booking_id: Optional[str],
    ) -> list[_Candidate]:
        if not requester_id or not candidates:
            return candidates

        own: list[Booking] = find_bookings(
            db,
            BookingQuery(user_id=requester_id, window_start=now, exclude_booking_id=exclude_booking_id),
        )
        buffer = self._config.travel_buffer_minutes
        kept: list[_Candidate] = []
        for candidate in candidates:
            clash = False
            for booking in own:
                if intervals_overlap(candidate.start_time, candidate.end_time, booking.start_time, booking.end_time):
                    clash = True
                    break
                if booking.resource_id != candidate.resource.id and gap_minutes(
                    candidate.start_time, candidate.end_time, booking.start_time, booking.end_time
                ) < buffer:
                    clash = True
                    break
            if not clash:
                kept.append(candidate)
        return kept

    def _rank(self, db: Session, candidates: list[_Candidate], requester: Optional[User], now: datetime) -> list[Suggestion]:
        if not candidates:
            return []

        config = self._config
        usage = recent_usage_counts(
            db,
            resource_ids={candidate.resource.id for candidate in candidates},
            since=now - timedelta(days=config.usage_lookback_days),
        )
        preferences = requester.preferences if requester else None

        ranked: list[Suggestion] = []
        for candidate in candidates:
            recent = usage.get(candidate.resource.id, 0)
            pref = preference_score(preferences, candidate.resource, candidate.start_time, config.schedule_timezone)
            ranked.append(
                Suggestion(
                    kind=candidate.kind,
                    resource_id=candidate.resource.id,
                    resource_name=candidate.resource.name,
                    start_time=candidate.start_time,
                    end_time=candidate.end_time,
                    similarity_score=round(candidate.similarity, 2),
                    preference_score=pref,
                    recent_usage=recent,
                    score=round(pref + candidate.similarity - config.usage_penalty * recent, 4),
                )
            )

        ranked.sort(key=lambda item: (-item.score, item.recent_usage, item.start_time, item.resource_id))
        return ranked[: config.suggestion_limit]


def only_minor_overlaps(conflict_set: ConflictSet, tolerance_minutes: int) -> bool:
    """True when the request is blocked only by bookings clipping it by at most the tolerance."""
    if conflict_set.has_blocking:
        return False
    records = conflict_set.booking_conflicts
    if not records:
        return False
    for record in records:
        if record.conflict_start is None or record.conflict_end is None:
            return False
        lo = max(conflict_set.start_time, record.conflict_start)
        hi = min(conflict_set.end_time, record.conflict_end)
        if hi - lo > timedelta(minutes=tolerance_minutes):
            return False
    return True


def time_shift_can_help(resource: Resource, conflict_set: Optional[ConflictSet]) -> bool:
    """False when the resource is out of service for any slot, not just this one."""
    if resource.status == MAINTENANCE_STATUS:
        return False
    if conflict_set is None:
        return True
    return not any(record.type in UNSHIFTABLE_CONFLICT_TYPES for record in conflict_set.records)
