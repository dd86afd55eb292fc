from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from sage_study.services.remote_scheduler import RemoteSchedulerError, ReviewRequest
from sage_study.study.models import (
    AuthoritativeState,
    Phase,
    Rating,
    ReviewEvent,
    SchedulingState,
    SyncStatus,
)
from sage_study.study.session import (
    RESTRICTED_RATING_REASON,
    Progress,
    RatingStatus,
    SessionStatus,
    StudySessionManager,
)
from sage_study.study.srs import Scheduler
from sage_study.study.sync import ReconciliationStatus, ReviewSynchronizer


NOW = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)
LEARNER = "learner-1"
DECK = "greek-basics"


class _GatedRemote:
    """Remote scheduler whose answers are held back until ``release`` is called."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.failing_cards: set[str] = set()
        self.requests: list[ReviewRequest] = []

    def release(self) -> None:
        self.gate.set()

    async def submit_review(self, request: ReviewRequest) -> AuthoritativeState:
        self.requests.append(request)
        await self.gate.wait()
        if request.card_id in self.failing_cards:
            raise RemoteSchedulerError("network unreachable")
        return AuthoritativeState(
            stability=4.0,
            difficulty=4.5,
            phase=Phase.REVIEW,
            due=NOW + timedelta(days=4),
        )


def _manager(store, remote=None, **kwargs) -> StudySessionManager:
    synchronizer = ReviewSynchronizer(store, remote) if remote is not None else None
    return StudySessionManager(store, LEARNER, synchronizer=synchronizer, clock=lambda: NOW, **kwargs)


async def _studied(
    store,
    card_id: str,
    at: datetime,
    *,
    state: SchedulingState | None = None,
    phase: Phase = Phase.NEW,
) -> SchedulingState:
    """Store a past review of ``card_id``; by default a new card graduated with ``good``."""
    if state is None:
        state = Scheduler().compute_update(SchedulingState.new(at), Rating.GOOD, at).next_state
    event = ReviewEvent(card_id, LEARNER, Rating.GOOD, phase, 0.0, state.scheduled_days, 1000, at)
    await store.record_review(LEARNER, card_id, state, event)
    return state


@pytest.mark.asyncio
async def test_three_new_cards_run_to_completion(store, deck) -> None:
    manager = _manager(store)
    assert manager.status is SessionStatus.NOT_STARTED

    assert await manager.start_session(DECK, deck[:3]) == Progress(1, 3, 33.33)
    assert manager.status is SessionStatus.IN_PROGRESS

    assert (await manager.rate_card(Rating.GOOD)).accepted
    assert manager.next_card() is True
    assert manager.get_progress() == Progress(2, 3, 66.67)

    assert (await manager.rate_card(Rating.AGAIN)).accepted
    assert manager.next_card() is True
    assert (await manager.rate_card(Rating.EASY)).accepted
    assert manager.next_card() is False

    assert manager.status is SessionStatus.COMPLETE
    assert manager.get_current_card() is None
    assert manager.get_progress() == Progress(3, 3, 100.0)
    assert manager.record.current_index == 3
    assert (manager.record.reviewed, manager.record.correct) == (3, 2)
    assert manager.next_card() is False


@pytest.mark.asyncio
async def test_rating_is_optimistic_and_persisted(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, deck[:1])
    current = manager.get_current_card()
    previews = current.previews

    result = await manager.rate_card("good", review_time_ms=3200)

    assert result.status is RatingStatus.ACCEPTED
    assert result.persisted is True
    assert result.previews == previews
    assert result.next_state.scheduled_days == previews.good
    assert current.state == result.next_state
    assert current.sync_status is SyncStatus.OPTIMISTIC

    stored = await store.get_state(LEARNER, "card-1")
    assert stored.state == result.next_state
    events = await store.list_review_events(LEARNER)
    assert [(event.rating, event.phase, event.review_time_ms) for event in events] == [
        (Rating.GOOD, Phase.NEW, 3200)
    ]


@pytest.mark.asyncio
async def test_incorrect_choice_answer_restricts_ratings(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, [deck[3]])

    answer = manager.submit_choice_answer("ψωμί")
    assert answer.accepted is True
    assert answer.correct is False
    assert answer.allowed_ratings == (Rating.AGAIN, Rating.HARD)

    refused = await manager.rate_card(Rating.GOOD)
    assert refused.status is RatingStatus.REFUSED
    assert refused.reason == RESTRICTED_RATING_REASON
    assert await store.get_state(LEARNER, "card-4") is None
    assert manager.record.reviewed == 0

    accepted = await manager.rate_card(Rating.AGAIN)
    assert accepted.status is RatingStatus.ACCEPTED
    assert accepted.next_state.phase is Phase.LEARNING


@pytest.mark.asyncio
async def test_correct_choice_answer_allows_every_rating(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, [deck[3]])

    unknown = manager.submit_choice_answer("γάλα")
    assert unknown.accepted is False

    answer = manager.submit_choice_answer("  νερό ")
    assert answer.correct is True
    assert manager.allowed_ratings() == tuple(Rating)
    assert manager.submit_choice_answer("ψωμί").accepted is False
    assert (await manager.rate_card(Rating.EASY)).accepted


@pytest.mark.asyncio
async def test_choice_answers_only_apply_to_choice_cards(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, deck[:1])

    result = manager.submit_choice_answer("house")

    assert result.accepted is False
    assert "not a multiple-choice card" in result.reason


@pytest.mark.asyncio
async def test_invalid_ratings_are_rejected(store, deck) -> None:
    manager = _manager(store)

    assert (await manager.rate_card(Rating.GOOD)).status is RatingStatus.REJECTED

    await manager.start_session(DECK, deck[:2])
    for invalid in (0, 7, "perfect", None, True):
        result = await manager.rate_card(invalid)
        assert result.status is RatingStatus.REJECTED
        assert result.reason

    wrong_card = await manager.rate_card(Rating.GOOD, card_id="card-2")
    assert wrong_card.status is RatingStatus.REJECTED
    negative_time = await manager.rate_card(Rating.GOOD, review_time_ms=-5)
    assert negative_time.status is RatingStatus.REJECTED

    assert (await manager.rate_card(Rating.GOOD, card_id="card-1")).accepted
    again = await manager.rate_card(Rating.EASY)
    assert again.status is RatingStatus.REJECTED
    assert "already been rated" in again.reason
    assert len(await store.list_review_events(LEARNER)) == 1


@pytest.mark.asyncio
async def test_restart_produces_independent_identical_sessions(store, deck) -> None:
    manager = _manager(store)

    await manager.start_session(DECK, deck[:3])
    first = manager.record
    manager.next_card()
    await manager.start_session(DECK, deck[:3])
    second = manager.record

    assert second is not first
    assert second.session_id != first.session_id
    assert second.current_index == 0
    assert [entry.previews for entry in second.cards] == [entry.previews for entry in first.cards]
    assert manager.get_progress() == Progress(1, 3, 33.33)


@pytest.mark.asyncio
async def test_duplicate_cards_are_dropped(store, deck) -> None:
    manager = _manager(store)

    await manager.start_session(DECK, [deck[0], deck[1], deck[0]])

    assert [entry.card_id for entry in manager.record.cards] == ["card-1", "card-2"]


@pytest.mark.asyncio
async def test_empty_session_reports_zero_progress(store) -> None:
    manager = _manager(store)

    assert manager.get_progress() == Progress(0, 0, 0.0)
    assert await manager.start_session(DECK, []) == Progress(0, 0, 0.0)
    assert manager.status is SessionStatus.COMPLETE
    assert manager.get_current_card() is None


@pytest.mark.asyncio
async def test_progress_stays_within_bounds(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, deck)

    seen = [manager.get_progress()]
    while True:
        await manager.rate_card(Rating.AGAIN)
        more = manager.next_card()
        seen.append(manager.get_progress())
        if not more:
            break

    assert all(0.0 <= progress.percentage <= 100.0 for progress in seen)
    assert all(progress.current <= progress.total for progress in seen)
    assert seen[-1].percentage == 100.0


@pytest.mark.asyncio
async def test_new_session_reuses_latest_known_state(store, deck) -> None:
    manager = _manager(store)
    await manager.start_session(DECK, deck[:1])
    rated = await manager.rate_card(Rating.GOOD)
    await manager.end_session()

    await manager.start_session(DECK, deck[:2])

    first, second = manager.record.cards
    assert first.state == rated.next_state
    assert second.state.phase is Phase.NEW


@pytest.mark.asyncio
async def test_failed_reconciliation_keeps_optimistic_state(store, deck) -> None:
    remote = _GatedRemote()
    remote.failing_cards.add("card-1")
    manager = _manager(store, remote)
    await manager.start_session(DECK, deck[:2])

    await manager.rate_card(Rating.GOOD)
    optimistic = await store.get_state(LEARNER, "card-1")
    assert optimistic.sync_status is SyncStatus.OPTIMISTIC
    assert manager.next_card() is True

    remote.release()
    results = await manager.wait_for_reconciliations()

    assert [result.status for result in results] == [ReconciliationStatus.FAILED_WILL_RETRY]
    assert await store.get_state(LEARNER, "card-1") == optimistic
    assert await store.get_state(LEARNER, "card-2") is None
    current = manager.get_current_card()
    assert current.card_id == "card-2"
    assert current.state.phase is Phase.NEW

    remote.failing_cards.clear()
    retried = await manager.sync_pending()

    assert [result.status for result in retried] == [ReconciliationStatus.CONFIRMED]
    confirmed = await store.get_state(LEARNER, "card-1")
    assert confirmed.sync_status is SyncStatus.CONFIRMED
    assert confirmed.state.stability == 4.0
    assert manager.get_current_card().state.phase is Phase.NEW


@pytest.mark.asyncio
async def test_late_confirmation_updates_store_but_not_stale_snapshot(store, deck) -> None:
    remote = _GatedRemote()
    manager = _manager(store, remote)
    await manager.start_session(DECK, deck[:2])

    rated = await manager.rate_card(Rating.GOOD)
    manager.next_card()
    remote.release()
    results = await manager.wait_for_reconciliations()

    assert [result.status for result in results] == [ReconciliationStatus.CONFIRMED]
    stored = await store.get_state(LEARNER, "card-1")
    assert stored.sync_status is SyncStatus.CONFIRMED
    assert stored.state.due == NOW + timedelta(days=4)

    snapshot = manager.record.cards[0]
    assert snapshot.state == rated.next_state
    assert snapshot.sync_status is SyncStatus.OPTIMISTIC


@pytest.mark.asyncio
async def test_confirmation_for_current_card_updates_snapshot(store, deck) -> None:
    remote = _GatedRemote()
    manager = _manager(store, remote)
    await manager.start_session(DECK, deck[:2])

    await manager.rate_card(Rating.HARD)
    remote.release()
    await manager.wait_for_reconciliations()

    current = manager.get_current_card()
    assert current.card_id == "card-1"
    assert current.sync_status is SyncStatus.CONFIRMED
    assert current.state.stability == 4.0
    assert current.state.phase is Phase.REVIEW


@pytest.mark.asyncio
async def test_ending_a_session_does_not_cancel_reconciliation(store, deck) -> None:
    remote = _GatedRemote()
    manager = _manager(store, remote)
    await manager.start_session(DECK, deck[:1])
    await manager.rate_card(Rating.GOOD)

    summary = await manager.end_session(now=NOW + timedelta(minutes=5))
    assert manager.record is None
    assert manager.pending_reconciliations == 1

    remote.release()
    results = await manager.wait_for_reconciliations()

    assert [result.status for result in results] == [ReconciliationStatus.CONFIRMED]
    assert (await store.get_state(LEARNER, "card-1")).sync_status is SyncStatus.CONFIRMED
    assert (summary.reviewed, summary.correct, summary.card_count) == (1, 1, 1)
    assert summary.duration_ms == 300_000
    assert await store.list_sessions(LEARNER) == [summary]


@pytest.mark.asyncio
async def test_due_session_respects_new_card_quota(store, deck) -> None:
    manager = _manager(store, new_cards_per_day=2)

    assert (await manager.start_due_session(DECK)).total == 2
    assert [entry.card_id for entry in manager.record.cards] == ["card-1", "card-2"]
    await manager.rate_card(Rating.GOOD)
    await manager.end_session()

    await manager.start_due_session(DECK)

    assert [entry.card_id for entry in manager.record.cards] == ["card-2"]


@pytest.mark.asyncio
async def test_due_reviews_are_studied_when_new_card_quota_is_spent(store, deck) -> None:
    await _studied(store, "card-4", NOW - timedelta(days=30))
    manager = _manager(store, new_cards_per_day=0, session_card_limit=2)

    progress = await manager.start_due_session(DECK)

    assert progress.total == 1
    assert [entry.card_id for entry in manager.record.cards] == ["card-4"]


@pytest.mark.asyncio
async def test_review_quota_caps_studied_cards(store, deck) -> None:
    for card_id in ("card-1", "card-2", "card-3"):
        await _studied(store, card_id, NOW - timedelta(days=30))
    manager = _manager(store, new_cards_per_day=1, reviews_per_day=2, session_card_limit=10)

    await manager.start_due_session(DECK)

    assert [entry.card_id for entry in manager.record.cards] == ["card-4", "card-1", "card-2"]


@pytest.mark.asyncio
async def test_session_card_limit_leaves_room_after_new_cards(store, deck) -> None:
    await _studied(store, "card-4", NOW - timedelta(days=30))
    manager = _manager(store, session_card_limit=2)

    await manager.start_due_session(DECK)

    assert [entry.card_id for entry in manager.record.cards] == ["card-1", "card-2"]


@pytest.mark.asyncio
async def test_quotas_count_todays_events_in_learner_time_zone(store, deck) -> None:
    athens = timezone(timedelta(hours=3))
    # 21:30 and 22:00 UTC on the 15th already fall on the 16th in Athens.
    overdue = await _studied(store, "card-2", NOW - timedelta(days=30))
    await _studied(store, "card-3", NOW - timedelta(days=30))
    await _studied(store, "card-1", datetime(2026, 10, 15, 22, 0, tzinfo=timezone.utc))
    await _studied(
        store,
        "card-2",
        datetime(2026, 10, 15, 21, 30, tzinfo=timezone.utc),
        state=overdue,
        phase=Phase.REVIEW,
    )

    local = _manager(store, tz=athens, new_cards_per_day=1, reviews_per_day=2)
    await local.start_due_session(DECK)
    assert [entry.card_id for entry in local.record.cards] == ["card-2"]

    utc = _manager(store, tz="UTC", new_cards_per_day=1, reviews_per_day=2)
    await utc.start_due_session(DECK)
    assert [entry.card_id for entry in utc.record.cards] == ["card-4", "card-2", "card-3"]


@pytest.mark.asyncio
async def test_unexpected_remote_error_is_reported_as_retry(store, deck) -> None:
    class _BrokenRemote:
        async def submit_review(self, request: ReviewRequest) -> AuthoritativeState:
            raise KeyError("nextState")

    manager = _manager(store, _BrokenRemote())
    await manager.start_session(DECK, deck[:1])
    rated = await manager.rate_card(Rating.GOOD)

    results = await manager.wait_for_reconciliations()

    assert [result.status for result in results] == [ReconciliationStatus.FAILED_WILL_RETRY]
    assert "nextState" in results[0].error
    assert manager.get_current_card().state == rated.next_state
    assert manager.get_current_card().sync_status is SyncStatus.OPTIMISTIC
    [queued] = await store.list_pending_reviews(LEARNER)
    assert (queued.card_id, queued.attempts) == ("card-1", 0)


@pytest.mark.asyncio
async def test_storage_failure_does_not_block_the_session(store, deck, monkeypatch) -> None:
    async def failing_record_review(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(store, "record_review", failing_record_review)
    manager = _manager(store, _GatedRemote())
    await manager.start_session(DECK, deck[:2])

    result = await manager.rate_card(Rating.GOOD)

    assert result.status is RatingStatus.ACCEPTED
    assert result.persisted is False
    assert manager.pending_reconciliations == 0
    assert manager.get_current_card().state == result.next_state
    assert manager.next_card() is True
