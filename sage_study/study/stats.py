"""Study statistics derived from stored scheduling states and the review log.

Nothing here keeps counters of its own: every figure is recomputed from the
Scheduling State Store so that it can always be rebuilt from persisted data.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from sage_study.db.scheduling import SchedulingStateStore
from sage_study.study.models import (
    Card,
    Phase,
    Rating,
    ReviewEvent,
    SchedulingState,
    SessionSummary,
    StoredState,
    ensure_utc,
)


LOGGER = logging.getLogger(__name__)

DEFAULT_MASTERY_STABILITY_DAYS = 21.0

INTERMEDIATE_THRESHOLD = 0.3
ADVANCED_THRESHOLD = 0.7
MASTERED_THRESHOLD = 1.0


class MasteryLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    MASTERED = "mastered"


def resolve_timezone(value: Union[str, tzinfo, None]) -> tzinfo:
    if value is None:
        return timezone.utc
    if isinstance(value, tzinfo):
        return value
    return ZoneInfo(value)


def local_date(moment: datetime, tz: tzinfo) -> date:
    return ensure_utc(moment).astimezone(tz).date()


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return the UTC instants at which the local ``day`` starts and ends."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return ensure_utc(start), ensure_utc(end)


def start_of_local_day(moment: datetime, tz: tzinfo) -> datetime:
    return day_bounds(local_date(moment, tz), tz)[0]


def is_mastered(state: SchedulingState, threshold: float = DEFAULT_MASTERY_STABILITY_DAYS) -> bool:
    return state.phase is Phase.REVIEW and state.stability > threshold


def mastery_level(ratio: float) -> MasteryLevel:
    if ratio >= MASTERED_THRESHOLD:
        return MasteryLevel.MASTERED
    if ratio >= ADVANCED_THRESHOLD:
        return MasteryLevel.ADVANCED
    if ratio >= INTERMEDIATE_THRESHOLD:
        return MasteryLevel.INTERMEDIATE
    return MasteryLevel.BEGINNER


@dataclass(frozen=True, slots=True)
class DeckStats:
    deck_id: str
    total: int = 0
    new: int = 0
    learning: int = 0
    review: int = 0
    relearning: int = 0
    due: int = 0
    mastered: int = 0

    @property
    def mastery_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.mastered / self.total

    @property
    def mastery_level(self) -> MasteryLevel:
        return mastery_level(self.mastery_ratio)


def deck_stats(
    deck_id: str,
    entries: Iterable[tuple[Card, Optional[StoredState]]],
    now: datetime,
    *,
    mastery_threshold: float = DEFAULT_MASTERY_STABILITY_DAYS,
) -> DeckStats:
    """Count a deck's cards per phase; cards never rated count as new and not due."""
    now = ensure_utc(now)
    phases: Counter[Phase] = Counter()
    total = due = mastered = 0
    for card, stored in entries:
        if card.deck_id != deck_id:
            continue
        total += 1
        if stored is None:
            phases[Phase.NEW] += 1
            continue
        state = stored.state
        phases[state.phase] += 1
        if ensure_utc(state.due) <= now:
            due += 1
        if is_mastered(state, mastery_threshold):
            mastered += 1
    return DeckStats(
        deck_id=deck_id,
        total=total,
        new=phases[Phase.NEW],
        learning=phases[Phase.LEARNING],
        review=phases[Phase.REVIEW],
        relearning=phases[Phase.RELEARNING],
        due=due,
        mastered=mastered,
    )


@dataclass(frozen=True, slots=True)
class StreakInfo:
    current: int = 0
    longest: int = 0
    last_study_day: Optional[date] = None


def study_streak(days: Iterable[date], today: date) -> StreakInfo:
    """Consecutive-day streaks over the given study days.

    The current streak only counts while the most recent study day is today or
    yesterday; otherwise it has been broken.
    """
    ordered = sorted(set(days))
    if not ordered:
        return StreakInfo()

    longest = run = 1
    for previous, current in zip(ordered, ordered[1:]):
        run = run + 1 if current - previous == timedelta(days=1) else 1
        longest = max(longest, run)

    last = ordered[-1]
    current_streak = 0
    if (today - last).days <= 1:
        current_streak = 1
        for previous, current in zip(reversed(ordered[:-1]), reversed(ordered)):
            if current - previous != timedelta(days=1):
                break
            current_streak += 1
    return StreakInfo(current=current_streak, longest=longest, last_study_day=last)


def rating_distribution(events: Iterable[ReviewEvent]) -> dict[str, int]:
    counts = {rating.key: 0 for rating in Rating}
    for event in events:
        counts[event.rating.key] += 1
    return counts


def accuracy(events: Sequence[ReviewEvent]) -> float:
    """Percentage of reviews rated good or better, 0 when there are none."""
    if not events:
        return 0.0
    correct = sum(1 for event in events if event.rating >= Rating.GOOD)
    return round(correct / len(events) * 100, 2)


@dataclass(frozen=True, slots=True)
class QuotaUsage:
    """Consumption of a daily quota; a limit of 0 means unlimited."""

    limit: int
    used: int

    @property
    def unlimited(self) -> bool:
        return self.limit <= 0

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, self.limit - self.used)


def split_daily_events(events: Iterable[ReviewEvent]) -> tuple[list[ReviewEvent], list[ReviewEvent]]:
    """Split events into first reviews of new cards and reviews of seen cards."""
    introduced: list[ReviewEvent] = []
    reviews: list[ReviewEvent] = []
    for event in events:
        (introduced if event.phase is Phase.NEW else reviews).append(event)
    return introduced, reviews


@dataclass(frozen=True, slots=True)
class DailyStats:
    day: date
    reviewed: int = 0
    new_introduced: int = 0
    study_time_ms: int = 0
    sessions: int = 0
    accuracy: float = 0.0
    due_today: int = 0
    due_tomorrow: int = 0
    ratings: dict[str, int] = field(default_factory=dict)
    new_quota: QuotaUsage = QuotaUsage(limit=0, used=0)
    review_quota: QuotaUsage = QuotaUsage(limit=0, used=0)


@dataclass(frozen=True, slots=True)
class LearnerStats:
    learner_id: str
    decks: list[DeckStats]
    today: DailyStats
    streak: StreakInfo
    ratings: dict[str, int]
    average_accuracy: float
    total_reviews: int


class StatsService:
    """Compute statistics for one learner on demand from the store."""

    def __init__(
        self,
        store: SchedulingStateStore,
        *,
        tz: Union[str, tzinfo, None] = None,
        mastery_threshold: float = DEFAULT_MASTERY_STABILITY_DAYS,
        new_cards_per_day: int = 20,
        reviews_per_day: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._tz = resolve_timezone(tz)
        self._mastery_threshold = mastery_threshold
        self._new_cards_per_day = new_cards_per_day
        self._reviews_per_day = reviews_per_day
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now or self._clock())

    async def deck_stats(self, learner_id: str, deck_id: str, now: Optional[datetime] = None) -> DeckStats:
        entries = await self._store.list_card_states(learner_id, deck_id)
        return deck_stats(deck_id, entries, self._now(now), mastery_threshold=self._mastery_threshold)

    async def all_deck_stats(self, learner_id: str, now: Optional[datetime] = None) -> list[DeckStats]:
        moment = self._now(now)
        entries = await self._store.list_card_states(learner_id)
        deck_ids = list(dict.fromkeys(card.deck_id for card, _ in entries))
        return [
            deck_stats(deck_id, entries, moment, mastery_threshold=self._mastery_threshold)
            for deck_id in deck_ids
        ]

    async def streak(self, learner_id: str, now: Optional[datetime] = None) -> StreakInfo:
        events = await self._store.list_review_events(learner_id)
        return study_streak(
            (local_date(event.reviewed_at, self._tz) for event in events),
            local_date(self._now(now), self._tz),
        )

    async def daily_stats(self, learner_id: str, now: Optional[datetime] = None) -> DailyStats:
        moment = self._now(now)
        today = local_date(moment, self._tz)
        start, end = day_bounds(today, self._tz)
        _, end_of_tomorrow = day_bounds(today + timedelta(days=1), self._tz)

        events = [
            event
            for event in await self._store.list_review_events(learner_id, since=start)
            if event.reviewed_at < end
        ]
        sessions: Sequence[SessionSummary] = [
            summary
            for summary in await self._store.list_sessions(learner_id, since=start)
            if summary.ended_at < end
        ]
        entries = await self._store.list_card_states(learner_id)

        due_today = due_tomorrow = 0
        for _, stored in entries:
            if stored is None:
                continue
            due = ensure_utc(stored.state.due)
            if due < end:
                due_today += 1
            elif due < end_of_tomorrow:
                due_tomorrow += 1

        introduced, reviews = split_daily_events(events)
        return DailyStats(
            day=today,
            reviewed=len(events),
            new_introduced=len(introduced),
            study_time_ms=sum(event.review_time_ms for event in events),
            sessions=len(sessions),
            accuracy=accuracy(events),
            due_today=due_today,
            due_tomorrow=due_tomorrow,
            ratings=rating_distribution(events),
            new_quota=QuotaUsage(limit=self._new_cards_per_day, used=len(introduced)),
            review_quota=QuotaUsage(limit=self._reviews_per_day, used=len(reviews)),
        )

    async def learner_stats(self, learner_id: str, now: Optional[datetime] = None) -> LearnerStats:
        moment = self._now(now)
        events = await self._store.list_review_events(learner_id)
        return LearnerStats(
            learner_id=learner_id,
            decks=await self.all_deck_stats(learner_id, moment),
            today=await self.daily_stats(learner_id, moment),
            streak=study_streak(
                (local_date(event.reviewed_at, self._tz) for event in events),
                local_date(moment, self._tz),
            ),
            ratings=rating_distribution(events),
            average_accuracy=accuracy(events),
            total_reviews=len(events),
        )
