from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from sage_study.study.models import (
    Card,
    Phase,
    Rating,
    ReviewEvent,
    SchedulingState,
    SessionSummary,
    StoredState,
)
from sage_study.study.srs import Scheduler
from sage_study.study.stats import (
    MasteryLevel,
    QuotaUsage,
    StatsService,
    deck_stats,
    mastery_level,
    study_streak,
)


NOW = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)
LEARNER = "learner-1"
DECK = "greek-basics"
ATHENS_SUMMER = timezone(timedelta(hours=3))


async def _review(
    store,
    card_id: str,
    rating: Rating,
    at: datetime,
    *,
    state: SchedulingState | None = None,
    phase: Phase = Phase.NEW,
) -> SchedulingState:
    if state is None:
        state = Scheduler().compute_update(SchedulingState.new(at), rating, at).next_state
    event = ReviewEvent(card_id, LEARNER, rating, phase, 0.0, state.scheduled_days, 1000, at)
    await store.record_review(LEARNER, card_id, state, event)
    return state


def _stored(card_id: str, phase: Phase, stability: float, due: datetime) -> StoredState:
    state = SchedulingState(
        stability=stability,
        difficulty=5.0,
        elapsed_days=0.0,
        scheduled_days=1.0,
        reps=3,
        lapses=0,
        phase=phase,
        due=due,
        last_review=min(due, NOW),
    )
    return StoredState(card_id=card_id, learner_id=LEARNER, state=state)


def test_streak_counts_consecutive_days_ending_today_or_yesterday() -> None:
    today = date(2026, 10, 16)
    days = [date(2026, 10, 16), date(2026, 10, 15), date(2026, 10, 14), date(2026, 10, 10), date(2026, 10, 11)]

    streak = study_streak(days, today)
    assert (streak.current, streak.longest, streak.last_study_day) == (3, 3, today)

    yesterday_only = study_streak([date(2026, 10, 15)], today)
    assert (yesterday_only.current, yesterday_only.longest) == (1, 1)

    broken = study_streak([date(2026, 10, 1), date(2026, 10, 2), date(2026, 10, 13)], today)
    assert (broken.current, broken.longest) == (0, 2)

    assert study_streak([], today).current == 0


def test_deck_stats_projects_phases_due_and_mastery() -> None:
    cards = [Card(id=f"c{index}", deck_id=DECK, prompt="?", answer="!") for index in range(5)]
    entries = [
        (cards[0], None),
        (cards[1], _stored("c1", Phase.LEARNING, 0.6, NOW - timedelta(minutes=1))),
        (cards[2], _stored("c2", Phase.REVIEW, 45.0, NOW + timedelta(days=40))),
        (cards[3], _stored("c3", Phase.REVIEW, 3.0, NOW)),
        (cards[4], _stored("c4", Phase.RELEARNING, 30.0, NOW + timedelta(minutes=10))),
        (Card(id="other", deck_id="other", prompt="?", answer="!"), None),
    ]

    stats = deck_stats(DECK, entries, NOW)

    assert (stats.total, stats.new, stats.learning, stats.review, stats.relearning) == (5, 1, 1, 2, 1)
    assert stats.due == 2
    assert stats.mastered == 1
    assert stats.mastery_ratio == pytest.approx(0.2)
    assert stats.mastery_level is MasteryLevel.BEGINNER


def test_empty_deck_has_zero_mastery() -> None:
    stats = deck_stats(DECK, [], NOW)

    assert stats.total == 0
    assert stats.mastery_ratio == 0.0


@pytest.mark.parametrize(
    ("ratio", "level"),
    [
        (0.0, MasteryLevel.BEGINNER),
        (0.29, MasteryLevel.BEGINNER),
        (0.3, MasteryLevel.INTERMEDIATE),
        (0.69, MasteryLevel.INTERMEDIATE),
        (0.7, MasteryLevel.ADVANCED),
        (0.99, MasteryLevel.ADVANCED),
        (1.0, MasteryLevel.MASTERED),
    ],
)
def test_mastery_levels(ratio: float, level: MasteryLevel) -> None:
    assert mastery_level(ratio) is level


def test_unlimited_quota_has_no_remaining_count() -> None:
    assert QuotaUsage(limit=0, used=12).remaining is None
    assert QuotaUsage(limit=20, used=25).remaining == 0
    assert QuotaUsage(limit=20, used=5).remaining == 15


@pytest.mark.asyncio
async def test_daily_stats_are_recomputed_from_the_log(store, deck) -> None:
    mastered_state = SchedulingState(
        stability=30.0,
        difficulty=4.0,
        elapsed_days=10.0,
        scheduled_days=1.0,
        reps=5,
        lapses=0,
        phase=Phase.REVIEW,
        due=NOW + timedelta(days=1),
        last_review=NOW - timedelta(minutes=30),
    )
    await _review(store, "card-1", Rating.GOOD, NOW - timedelta(hours=1))
    await _review(store, "card-2", Rating.AGAIN, NOW - timedelta(hours=2))
    await _review(store, "card-3", Rating.HARD, NOW - timedelta(minutes=30), state=mastered_state, phase=Phase.REVIEW)
    await _review(store, "card-4", Rating.GOOD, datetime(2026, 10, 15, 20, 0, tzinfo=timezone.utc))
    for ended_at in (NOW - timedelta(minutes=10), NOW - timedelta(days=1)):
        await store.record_session(
            SessionSummary(LEARNER, DECK, ended_at - timedelta(minutes=5), ended_at, 2, 1, 2)
        )

    service = StatsService(store, tz="UTC", new_cards_per_day=20, reviews_per_day=0, clock=lambda: NOW)
    today = await service.daily_stats(LEARNER)

    assert today.day == date(2026, 10, 16)
    assert (today.reviewed, today.new_introduced, today.study_time_ms) == (3, 2, 3000)
    assert today.ratings == {"again": 1, "hard": 1, "good": 1, "easy": 0}
    assert today.accuracy == 33.33
    assert (today.due_today, today.due_tomorrow) == (1, 2)
    assert today.sessions == 1
    assert (today.new_quota.used, today.new_quota.remaining) == (2, 18)
    assert today.review_quota.unlimited and today.review_quota.used == 1

    overview = await service.learner_stats(LEARNER)
    assert overview.total_reviews == 4
    assert overview.average_accuracy == 50.0
    assert (overview.streak.current, overview.streak.longest) == (2, 2)
    [deck_overview] = overview.decks
    assert (deck_overview.total, deck_overview.learning, deck_overview.review) == (4, 1, 3)
    assert deck_overview.due == 1
    assert deck_overview.mastered == 1
    assert deck_overview.mastery_level is MasteryLevel.BEGINNER


@pytest.mark.asyncio
async def test_days_follow_the_learner_time_zone(store, deck) -> None:
    # 22:30 UTC on the 15th is already 01:30 on the 16th in Athens.
    await _review(store, "card-1", Rating.GOOD, datetime(2026, 10, 15, 22, 30, tzinfo=timezone.utc))
    await _review(store, "card-2", Rating.GOOD, datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc))

    utc = StatsService(store, tz="UTC", clock=lambda: NOW)
    athens = StatsService(store, tz=ATHENS_SUMMER, clock=lambda: NOW)

    assert (await utc.daily_stats(LEARNER)).reviewed == 0
    assert (await athens.daily_stats(LEARNER)).reviewed == 1

    utc_streak = await utc.streak(LEARNER)
    athens_streak = await athens.streak(LEARNER)
    assert (utc_streak.current, utc_streak.longest) == (2, 2)
    assert (athens_streak.current, athens_streak.longest) == (1, 1)
    assert athens_streak.last_study_day == date(2026, 10, 16)
