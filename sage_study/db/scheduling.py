"""Persistence of per-learner scheduling states, review events and the sync outbox."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sage_study.study.models import (
    AuthoritativeState,
    Card,
    DueCard,
    PendingReview,
    Phase,
    Rating,
    ReviewEvent,
    SchedulingState,
    SessionSummary,
    StoredState,
    SyncStatus,
    ensure_utc,
)

from . import (
    CardRecord,
    PendingReviewRecord,
    ReviewEventRecord,
    SchedulingStateRecord,
    StudySessionRecord,
)
from .cards import to_card


LOGGER = logging.getLogger(__name__)


def to_scheduling_state(record: SchedulingStateRecord) -> SchedulingState:
    """Convert a row into a domain state, raising ValueError when it is corrupt."""
    if record.due is None:
        raise ValueError("missing due timestamp")
    return SchedulingState(
        stability=float(record.stability),
        difficulty=float(record.difficulty),
        elapsed_days=float(record.elapsed_days or 0.0),
        scheduled_days=float(record.scheduled_days or 0.0),
        reps=int(record.reps or 0),
        lapses=int(record.lapses or 0),
        phase=Phase(record.phase),
        due=ensure_utc(record.due),
        last_review=ensure_utc(record.last_review) if record.last_review is not None else None,
        step=int(record.step or 0),
    ).validate()


def to_stored_state(record: SchedulingStateRecord) -> StoredState:
    return StoredState(
        card_id=record.card_id,
        learner_id=record.learner_id,
        state=to_scheduling_state(record),
        sync_status=SyncStatus(record.sync_status),
    )


def _to_stored_or_none(record: Optional[SchedulingStateRecord]) -> Optional[StoredState]:
    """Return the stored state, or None when the row is absent or unreadable."""
    if record is None:
        return None
    try:
        return to_stored_state(record)
    except (TypeError, ValueError) as exc:
        LOGGER.warning(
            "Ignoring corrupt scheduling state for card %s (learner %s): %s",
            record.card_id,
            record.learner_id,
            exc,
        )
        return None


def to_pending_review(record: PendingReviewRecord) -> PendingReview:
    return PendingReview(
        id=record.id,
        card_id=record.card_id,
        learner_id=record.learner_id,
        rating=Rating(record.rating),
        review_time_ms=record.review_time_ms,
        reviewed_at=ensure_utc(record.reviewed_at),
        attempts=record.attempts,
        last_error=record.last_error,
    )


async def get_state_record(
    session: AsyncSession,
    learner_id: str,
    card_id: str,
) -> Optional[SchedulingStateRecord]:
    stmt = select(SchedulingStateRecord).where(
        SchedulingStateRecord.learner_id == learner_id,
        SchedulingStateRecord.card_id == card_id,
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def upsert_scheduling_state(
    session: AsyncSession,
    learner_id: str,
    card_id: str,
    state: SchedulingState,
    sync_status: SyncStatus,
) -> SchedulingStateRecord:
    """Write ``state`` as the single record for ``(card_id, learner_id)``."""
    record = await get_state_record(session, learner_id, card_id)
    if record is None:
        record = SchedulingStateRecord(card_id=card_id, learner_id=learner_id)
        session.add(record)

    record.stability = state.stability
    record.difficulty = state.difficulty
    record.elapsed_days = state.elapsed_days
    record.scheduled_days = state.scheduled_days
    record.reps = state.reps
    record.lapses = state.lapses
    record.phase = state.phase.value
    record.step = state.step
    record.due = ensure_utc(state.due)
    record.last_review = ensure_utc(state.last_review) if state.last_review is not None else None
    record.sync_status = sync_status.value
    await session.flush()
    return record


async def append_review_event(session: AsyncSession, event: ReviewEvent) -> None:
    session.add(
        ReviewEventRecord(
            card_id=event.card_id,
            learner_id=event.learner_id,
            rating=int(event.rating),
            phase=event.phase.value,
            elapsed_days=event.elapsed_days,
            scheduled_days=event.scheduled_days,
            review_time_ms=event.review_time_ms,
            reviewed_at=ensure_utc(event.reviewed_at),
        )
    )
    await session.flush()


async def enqueue_pending_review(session: AsyncSession, event: ReviewEvent) -> PendingReview:
    record = PendingReviewRecord(
        card_id=event.card_id,
        learner_id=event.learner_id,
        rating=int(event.rating),
        review_time_ms=event.review_time_ms,
        reviewed_at=ensure_utc(event.reviewed_at),
        attempts=0,
        last_error=None,
    )
    session.add(record)
    await session.flush()
    return to_pending_review(record)


class SchedulingStateStore:
    """Keyed record table of scheduling states, shared by sessions and reconciliation.

    Every unit of work runs under one lock, so optimistic writes from the
    session flow and authoritative writes from background reconciliation
    never interleave inside a transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def get_state(self, learner_id: str, card_id: str) -> Optional[StoredState]:
        async with self._lock, self._session_factory() as session:
            record = await get_state_record(session, learner_id, card_id)
            return _to_stored_or_none(record)

    async def load_states(self, learner_id: str, card_ids: Iterable[str]) -> dict[str, StoredState]:
        """Return readable stored states for the given cards, keyed by card id."""
        ids = list(dict.fromkeys(card_ids))
        if not ids:
            return {}
        async with self._lock, self._session_factory() as session:
            stmt = select(SchedulingStateRecord).where(
                SchedulingStateRecord.learner_id == learner_id,
                SchedulingStateRecord.card_id.in_(ids),
            )
            result = await session.execute(stmt)
            states: dict[str, StoredState] = {}
            for record in result.scalars().all():
                stored = _to_stored_or_none(record)
                if stored is not None:
                    states[record.card_id] = stored
            return states

    async def record_review(
        self,
        learner_id: str,
        card_id: str,
        next_state: SchedulingState,
        event: ReviewEvent,
    ) -> PendingReview:
        """Persist an optimistic state, its review event and an outbox entry atomically."""
        async with self._lock, self._session_factory() as session:
            async with session.begin():
                await upsert_scheduling_state(session, learner_id, card_id, next_state, SyncStatus.OPTIMISTIC)
                await append_review_event(session, event)
                return await enqueue_pending_review(session, event)

    async def apply_authoritative(
        self,
        pending: PendingReview,
        authoritative: AuthoritativeState,
    ) -> StoredState:
        """Overwrite the state of ``pending.card_id`` with the remote scheduler's result."""
        async with self._lock, self._session_factory() as session:
            async with session.begin():
                record = await get_state_record(session, pending.learner_id, pending.card_id)
                current = _to_stored_or_none(record)
                if current is None:
                    base = SchedulingState.new(pending.reviewed_at).with_changes(
                        reps=1,
                        last_review=ensure_utc(pending.reviewed_at),
                    )
                else:
                    base = current.state

                due = ensure_utc(authoritative.due)
                if base.last_review is not None and due < base.last_review:
                    LOGGER.warning(
                        "Authoritative due %s for card %s precedes its last review; using %s.",
                        due.isoformat(),
                        pending.card_id,
                        base.last_review.isoformat(),
                    )
                    due = base.last_review
                scheduled_days = base.scheduled_days
                if base.last_review is not None:
                    scheduled_days = (due - base.last_review).total_seconds() / 86400.0

                merged = base.with_changes(
                    stability=authoritative.stability,
                    difficulty=authoritative.difficulty,
                    phase=authoritative.phase,
                    due=due,
                    scheduled_days=scheduled_days,
                )

                await session.execute(
                    delete(PendingReviewRecord).where(PendingReviewRecord.id == pending.id)
                )
                remaining = await session.scalar(
                    select(func.count(PendingReviewRecord.id)).where(
                        PendingReviewRecord.learner_id == pending.learner_id,
                        PendingReviewRecord.card_id == pending.card_id,
                    )
                )
                status = SyncStatus.CONFIRMED if not remaining else SyncStatus.OPTIMISTIC
                await upsert_scheduling_state(session, pending.learner_id, pending.card_id, merged, status)

        return StoredState(
            card_id=pending.card_id,
            learner_id=pending.learner_id,
            state=merged,
            sync_status=status,
        )

    async def mark_attempt_failed(self, pending: PendingReview, error: str, max_attempts: int) -> bool:
        """Count a failed submission; return False when the entry was discarded."""
        async with self._lock, self._session_factory() as session:
            async with session.begin():
                record = await session.get(PendingReviewRecord, pending.id)
                if record is None:
                    return False
                record.attempts += 1
                record.last_error = error
                if record.attempts >= max_attempts:
                    LOGGER.error(
                        "Discarding review of card %s for learner %s after %s failed attempts: %s",
                        record.card_id,
                        record.learner_id,
                        record.attempts,
                        error,
                    )
                    await session.delete(record)
                    return False
                return True

    async def list_pending_reviews(self, learner_id: Optional[str] = None) -> list[PendingReview]:
        async with self._lock, self._session_factory() as session:
            stmt = select(PendingReviewRecord).order_by(PendingReviewRecord.id)
            if learner_id is not None:
                stmt = stmt.where(PendingReviewRecord.learner_id == learner_id)
            result = await session.execute(stmt)
            return [to_pending_review(record) for record in result.scalars().all()]

    async def due_cards(
        self,
        learner_id: str,
        deck_id: str,
        now: datetime,
        *,
        limit: int = 20,
        offset: int = 0,
        new_cards: Optional[bool] = None,
    ) -> list[DueCard]:
        """Return one page of a deck's cards whose state is due (or absent).

        ``new_cards`` narrows the page to unseen cards (``True``) or to cards
        already studied (``False``); ``None`` returns both, unseen first.
        """
        now = ensure_utc(now)
        state = SchedulingStateRecord
        unseen = or_(state.id.is_(None), state.phase == Phase.NEW.value)
        stmt = (
            select(CardRecord, state)
            .outerjoin(state, and_(state.card_id == CardRecord.id, state.learner_id == learner_id))
            .where(CardRecord.deck_id == deck_id, or_(state.id.is_(None), state.due <= now))
        )
        if new_cards is True:
            stmt = stmt.where(unseen)
        elif new_cards is False:
            stmt = stmt.where(state.id.is_not(None), state.phase != Phase.NEW.value)
        stmt = (
            stmt.order_by(
                case((state.id.is_(None), 0), else_=1),
                state.due,
                CardRecord.position,
                CardRecord.id,
            )
            .limit(limit)
            .offset(offset)
        )
        async with self._lock, self._session_factory() as session:
            result = await session.execute(stmt)
            return [DueCard(card=to_card(card), stored=_to_stored_or_none(record)) for card, record in result.all()]

    async def list_card_states(
        self,
        learner_id: str,
        deck_id: Optional[str] = None,
    ) -> list[tuple[Card, Optional[StoredState]]]:
        """Return every card (optionally of one deck) with the learner's state, if any."""
        state = SchedulingStateRecord
        stmt = (
            select(CardRecord, state)
            .outerjoin(state, and_(state.card_id == CardRecord.id, state.learner_id == learner_id))
            .order_by(CardRecord.deck_id, CardRecord.position, CardRecord.id)
        )
        if deck_id is not None:
            stmt = stmt.where(CardRecord.deck_id == deck_id)
        async with self._lock, self._session_factory() as session:
            result = await session.execute(stmt)
            return [(to_card(card), _to_stored_or_none(record)) for card, record in result.all()]

    async def list_review_events(
        self,
        learner_id: str,
        since: Optional[datetime] = None,
    ) -> list[ReviewEvent]:
        stmt = (
            select(ReviewEventRecord)
            .where(ReviewEventRecord.learner_id == learner_id)
            .order_by(ReviewEventRecord.reviewed_at, ReviewEventRecord.id)
        )
        if since is not None:
            stmt = stmt.where(ReviewEventRecord.reviewed_at >= ensure_utc(since))
        async with self._lock, self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                ReviewEvent(
                    card_id=record.card_id,
                    learner_id=record.learner_id,
                    rating=Rating(record.rating),
                    phase=Phase(record.phase),
                    elapsed_days=record.elapsed_days,
                    scheduled_days=record.scheduled_days,
                    review_time_ms=record.review_time_ms,
                    reviewed_at=ensure_utc(record.reviewed_at),
                )
                for record in result.scalars().all()
            ]

    async def record_session(self, summary: SessionSummary) -> None:
        async with self._lock, self._session_factory() as session:
            async with session.begin():
                session.add(
                    StudySessionRecord(
                        learner_id=summary.learner_id,
                        deck_id=summary.deck_id,
                        card_count=summary.card_count,
                        cards_studied=summary.reviewed,
                        cards_correct=summary.correct,
                        duration_ms=summary.duration_ms,
                        started_at=ensure_utc(summary.started_at),
                        ended_at=ensure_utc(summary.ended_at),
                    )
                )

    async def list_sessions(
        self,
        learner_id: str,
        since: Optional[datetime] = None,
    ) -> Sequence[SessionSummary]:
        stmt = (
            select(StudySessionRecord)
            .where(StudySessionRecord.learner_id == learner_id)
            .order_by(StudySessionRecord.ended_at, StudySessionRecord.id)
        )
        if since is not None:
            stmt = stmt.where(StudySessionRecord.ended_at >= ensure_utc(since))
        async with self._lock, self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                SessionSummary(
                    learner_id=record.learner_id,
                    deck_id=record.deck_id,
                    started_at=ensure_utc(record.started_at),
                    ended_at=ensure_utc(record.ended_at),
                    reviewed=record.cards_studied,
                    correct=record.cards_correct,
                    card_count=record.card_count,
                )
                for record in result.scalars().all()
            ]
