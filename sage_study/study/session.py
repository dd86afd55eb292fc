"""Study session state machine with optimistic scheduling updates."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from sage_study.db.scheduling import SchedulingStateStore
from sage_study.study.models import (
    Card,
    CardKind,
    IntervalPreviews,
    PendingReview,
    Rating,
    ReviewEvent,
    SchedulingState,
    SessionSummary,
    StoredState,
    SyncStatus,
    ensure_utc,
)
from sage_study.study.srs import Scheduler
from sage_study.study.stats import resolve_timezone, split_daily_events, start_of_local_day
from sage_study.study.sync import ReconciliationResult, ReconciliationStatus, ReviewSynchronizer


LOGGER = logging.getLogger(__name__)

RESTRICTED_RATING_REASON = "For incorrect answers, please choose Again or Hard to help reinforce this card"
RESTRICTED_RATINGS: Tuple[Rating, ...] = (Rating.AGAIN, Rating.HARD)
ALL_RATINGS: Tuple[Rating, ...] = tuple(Rating)


def _normalize_option(value: str) -> str:
    return value.strip().casefold()


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class RatingStatus(str, Enum):
    ACCEPTED = "accepted"
    REFUSED = "refused"
    REJECTED = "rejected"


@dataclass(slots=True)
class SessionCard:
    """A card in the session with its scheduling snapshot and rating previews."""

    card: Card
    state: SchedulingState
    previews: IntervalPreviews
    sync_status: SyncStatus = SyncStatus.OPTIMISTIC
    rating: Optional[Rating] = None
    answer_correct: Optional[bool] = None
    selected_option: Optional[str] = None

    @property
    def card_id(self) -> str:
        return self.card.id

    @property
    def rated(self) -> bool:
        return self.rating is not None


@dataclass(slots=True)
class SessionRecord:
    session_id: int
    deck_id: str
    cards: list[SessionCard]
    started_at: datetime
    current_index: int = 0
    reviewed: int = 0
    correct: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS

    @property
    def current(self) -> Optional[SessionCard]:
        if 0 <= self.current_index < len(self.cards):
            return self.cards[self.current_index]
        return None


@dataclass(frozen=True, slots=True)
class Progress:
    current: int
    total: int
    percentage: float


@dataclass(frozen=True, slots=True)
class RatingResult:
    status: RatingStatus
    card_id: Optional[str] = None
    rating: Optional[Rating] = None
    next_state: Optional[SchedulingState] = None
    previews: Optional[IntervalPreviews] = None
    reason: Optional[str] = None
    persisted: bool = False

    @property
    def accepted(self) -> bool:
        return self.status is RatingStatus.ACCEPTED


@dataclass(frozen=True, slots=True)
class ChoiceAnswerResult:
    accepted: bool
    correct: Optional[bool] = None
    allowed_ratings: Tuple[Rating, ...] = ()
    reason: Optional[str] = None


class StudySessionManager:
    """Run one learner's study sessions, one at a time.

    Ratings are applied to the in-memory session and the store immediately.
    Reconciliation with the remote scheduler runs as a background task whose
    completion is posted to an inbox; the inbox is drained on every public
    operation, and an authoritative result only touches the in-memory snapshot
    when its card is still the current card of the session that rated it. The
    store is always updated by card identity, whatever the session does.
    """

    def __init__(
        self,
        store: SchedulingStateStore,
        learner_id: str,
        *,
        scheduler: Optional[Scheduler] = None,
        synchronizer: Optional[ReviewSynchronizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Union[str, tzinfo, None] = None,
        new_cards_per_day: int = 20,
        reviews_per_day: int = 0,
        session_card_limit: int = 20,
    ) -> None:
        if not learner_id:
            raise ValueError("learner_id is required.")
        self._store = store
        self._learner_id = learner_id
        self._scheduler = scheduler or Scheduler()
        self._synchronizer = synchronizer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tz = resolve_timezone(tz)
        self._new_cards_per_day = new_cards_per_day
        self._reviews_per_day = reviews_per_day
        self._session_card_limit = session_card_limit
        self._session_ids = itertools.count(1)
        self._record: Optional[SessionRecord] = None
        self._inbox: asyncio.Queue[tuple[int, ReconciliationResult]] = asyncio.Queue()
        self._tasks: set[asyncio.Task[ReconciliationResult]] = set()

    @property
    def learner_id(self) -> str:
        return self._learner_id

    @property
    def status(self) -> SessionStatus:
        if self._record is None:
            return SessionStatus.NOT_STARTED
        return self._record.status

    @property
    def record(self) -> Optional[SessionRecord]:
        return self._record

    @property
    def pending_reconciliations(self) -> int:
        return len(self._tasks)

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now or self._clock())

    async def start_session(
        self,
        deck_id: str,
        cards: Iterable[Card],
        *,
        now: Optional[datetime] = None,
    ) -> Progress:
        """Begin a new session over ``cards``, replacing any session in progress."""
        self.drain_reconciliations()
        moment = self._now(now)

        unique: list[Card] = []
        seen: set[str] = set()
        for card in cards:
            if card.id in seen:
                LOGGER.warning("Dropping duplicate card %s from session for deck %s.", card.id, deck_id)
                continue
            seen.add(card.id)
            unique.append(card)

        try:
            stored = await self._store.load_states(self._learner_id, seen)
        except SQLAlchemyError:
            LOGGER.exception(
                "Could not load scheduling states for learner %s; starting every card as new.",
                self._learner_id,
            )
            stored = {}

        entries = []
        for card in unique:
            known: Optional[StoredState] = stored.get(card.id)
            state = known.state if known is not None else SchedulingState.new(moment)
            entries.append(
                SessionCard(
                    card=card,
                    state=state,
                    previews=self._scheduler.preview(state, moment),
                    sync_status=known.sync_status if known is not None else SyncStatus.OPTIMISTIC,
                )
            )

        status = SessionStatus.IN_PROGRESS if entries else SessionStatus.COMPLETE
        self._record = SessionRecord(
            session_id=next(self._session_ids),
            deck_id=deck_id,
            cards=entries,
            started_at=moment,
            status=status,
        )
        LOGGER.info(
            "Started session %s for learner %s on deck %s with %s card(s).",
            self._record.session_id,
            self._learner_id,
            deck_id,
            len(entries),
        )
        return self.get_progress()

    async def start_due_session(self, deck_id: str, *, now: Optional[datetime] = None) -> Progress:
        """Start a session over the deck's due cards, honouring the daily quotas."""
        moment = self._now(now)
        limit = self._session_card_limit
        try:
            todays_events = await self._store.list_review_events(
                self._learner_id,
                since=start_of_local_day(moment, self._tz),
            )
            introduced, reviews = split_daily_events(todays_events)
            new_limit = min(limit, max(0, self._new_cards_per_day - len(introduced)))
            review_limit = limit
            if self._reviews_per_day > 0:
                review_limit = min(limit, max(0, self._reviews_per_day - len(reviews)))

            new_due = []
            if new_limit > 0:
                new_due = await self._store.due_cards(
                    self._learner_id, deck_id, moment, limit=new_limit, new_cards=True
                )
            seen_due = []
            review_limit = min(review_limit, limit - len(new_due))
            if review_limit > 0:
                seen_due = await self._store.due_cards(
                    self._learner_id, deck_id, moment, limit=review_limit, new_cards=False
                )
        except SQLAlchemyError:
            LOGGER.exception("Could not fetch due cards for learner %s.", self._learner_id)
            new_due, seen_due = [], []

        selected = [item.card for item in new_due + seen_due]
        return await self.start_session(deck_id, selected, now=moment)

    def get_current_card(self) -> Optional[SessionCard]:
        self.drain_reconciliations()
        if self._record is None:
            return None
        return self._record.current

    def allowed_ratings(self) -> Tuple[Rating, ...]:
        entry = self._record.current if self._record is not None else None
        if entry is None:
            return ()
        if entry.card.kind is CardKind.CHOICE and entry.answer_correct is False:
            return RESTRICTED_RATINGS
        return ALL_RATINGS

    def submit_choice_answer(self, option: str) -> ChoiceAnswerResult:
        """Record the learner's pick for the current choice card."""
        entry = self.get_current_card()
        if entry is None:
            return ChoiceAnswerResult(accepted=False, reason="No card is currently being studied.")
        card = entry.card
        if card.kind is not CardKind.CHOICE:
            return ChoiceAnswerResult(accepted=False, reason=f"Card {card.id} is not a multiple-choice card.")
        if entry.rated or entry.answer_correct is not None:
            return ChoiceAnswerResult(
                accepted=False,
                correct=entry.answer_correct,
                allowed_ratings=self.allowed_ratings(),
                reason=f"An answer was already submitted for card {card.id}.",
            )

        if not isinstance(option, str):
            return ChoiceAnswerResult(accepted=False, reason=f"Unknown option {option!r}.")
        chosen = _normalize_option(option)
        if chosen not in {_normalize_option(candidate) for candidate in card.options or ()}:
            return ChoiceAnswerResult(accepted=False, reason=f"Unknown option {option!r}.")

        entry.selected_option = option.strip()
        entry.answer_correct = chosen == _normalize_option(card.answer)
        return ChoiceAnswerResult(
            accepted=True,
            correct=entry.answer_correct,
            allowed_ratings=self.allowed_ratings(),
            reason=None if entry.answer_correct else RESTRICTED_RATING_REASON,
        )

    async def rate_card(
        self,
        rating: object,
        *,
        card_id: Optional[str] = None,
        review_time_ms: int = 0,
        now: Optional[datetime] = None,
    ) -> RatingResult:
        """Apply a rating to the current card.

        The new state is visible in the session and written to the store before
        the remote reconciliation is dispatched.
        """
        self.drain_reconciliations()
        try:
            parsed = Rating.parse(rating)
        except ValueError as exc:
            return RatingResult(status=RatingStatus.REJECTED, reason=str(exc))

        if not isinstance(review_time_ms, int) or isinstance(review_time_ms, bool) or review_time_ms < 0:
            return RatingResult(
                status=RatingStatus.REJECTED,
                rating=parsed,
                reason="review_time_ms must be a non-negative integer.",
            )

        record = self._record
        entry = record.current if record is not None else None
        if record is None or entry is None:
            return RatingResult(status=RatingStatus.REJECTED, rating=parsed, reason="No card is currently being studied.")
        if card_id is not None and card_id != entry.card_id:
            return RatingResult(
                status=RatingStatus.REJECTED,
                card_id=card_id,
                rating=parsed,
                reason=f"Card {card_id} is not the current card of this session.",
            )
        if entry.rated:
            return RatingResult(
                status=RatingStatus.REJECTED,
                card_id=entry.card_id,
                rating=parsed,
                reason=f"Card {entry.card_id} has already been rated in this session.",
            )
        if parsed not in self.allowed_ratings():
            return RatingResult(
                status=RatingStatus.REFUSED,
                card_id=entry.card_id,
                rating=parsed,
                reason=RESTRICTED_RATING_REASON,
            )

        moment = self._now(now)
        previous = entry.state
        update = self._scheduler.compute_update(previous, parsed, moment)
        next_state = update.next_state

        entry.state = next_state
        entry.rating = parsed
        entry.sync_status = SyncStatus.OPTIMISTIC
        record.reviewed += 1
        if parsed >= Rating.GOOD:
            record.correct += 1

        event = ReviewEvent(
            card_id=entry.card_id,
            learner_id=self._learner_id,
            rating=parsed,
            phase=previous.phase,
            elapsed_days=next_state.elapsed_days,
            scheduled_days=next_state.scheduled_days,
            review_time_ms=review_time_ms,
            reviewed_at=moment,
        )
        try:
            pending = await self._store.record_review(self._learner_id, entry.card_id, next_state, event)
        except SQLAlchemyError:
            LOGGER.exception(
                "Could not persist review of card %s for learner %s; keeping the in-memory state.",
                entry.card_id,
                self._learner_id,
            )
            pending = None

        if pending is not None and self._synchronizer is not None:
            task = asyncio.create_task(self._reconcile(record.session_id, pending))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return RatingResult(
            status=RatingStatus.ACCEPTED,
            card_id=entry.card_id,
            rating=parsed,
            next_state=next_state,
            previews=update.previews,
            persisted=pending is not None,
        )

    async def _reconcile(self, session_id: int, pending: PendingReview) -> ReconciliationResult:
        try:
            result = await self._synchronizer.submit(pending)
        except Exception as exc:
            LOGGER.exception("Reconciliation of card %s failed unexpectedly.", pending.card_id)
            result = ReconciliationResult(
                pending=pending,
                status=ReconciliationStatus.FAILED_WILL_RETRY,
                error=str(exc),
            )
        self._inbox.put_nowait((session_id, result))
        return result

    def next_card(self) -> bool:
        """Advance past the current card; return whether another card remains."""
        self.drain_reconciliations()
        record = self._record
        if record is None or record.status is SessionStatus.COMPLETE:
            return False
        record.current_index = min(record.current_index + 1, len(record.cards))
        if record.current_index >= len(record.cards):
            record.status = SessionStatus.COMPLETE
            LOGGER.info(
                "Session %s complete: %s reviewed, %s correct.",
                record.session_id,
                record.reviewed,
                record.correct,
            )
            return False
        return True

    def get_progress(self) -> Progress:
        record = self._record
        if record is None or not record.cards:
            return Progress(current=0, total=0, percentage=0.0)
        total = len(record.cards)
        current = min(record.current_index + 1, total)
        return Progress(current=current, total=total, percentage=round(current / total * 100, 2))

    async def end_session(self, *, now: Optional[datetime] = None) -> Optional[SessionSummary]:
        """Discard the session and persist its duration record.

        In-flight reconciliations keep running and still write to the store.
        """
        self.drain_reconciliations()
        record = self._record
        if record is None:
            return None
        self._record = None

        summary = SessionSummary(
            learner_id=self._learner_id,
            deck_id=record.deck_id,
            started_at=record.started_at,
            ended_at=self._now(now),
            reviewed=record.reviewed,
            correct=record.correct,
            card_count=len(record.cards),
        )
        try:
            await self._store.record_session(summary)
        except SQLAlchemyError:
            LOGGER.exception("Could not persist summary of session %s.", record.session_id)
        return summary

    def drain_reconciliations(self) -> list[ReconciliationResult]:
        """Apply every completed reconciliation posted since the last drain."""
        results: list[ReconciliationResult] = []
        while True:
            try:
                session_id, result = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._apply_reconciliation(session_id, result)
            results.append(result)
        return results

    async def wait_for_reconciliations(self) -> list[ReconciliationResult]:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        return self.drain_reconciliations()

    async def sync_pending(self) -> Sequence[ReconciliationResult]:
        """Retry this learner's queued reviews that are not already in flight."""
        if self._synchronizer is None:
            return []
        try:
            results = await self._synchronizer.sync_pending(self._learner_id)
        except SQLAlchemyError:
            LOGGER.exception("Could not sync queued reviews for learner %s.", self._learner_id)
            return []
        session_id = self._record.session_id if self._record is not None else 0
        for result in results:
            self._apply_reconciliation(session_id, result)
        return results

    def _apply_reconciliation(self, session_id: int, result: ReconciliationResult) -> None:
        if result.status is not ReconciliationStatus.CONFIRMED or result.stored is None:
            return
        record = self._record
        if record is None or record.session_id != session_id:
            return
        entry = record.current
        if entry is None or entry.card_id != result.card_id:
            return
        entry.state = result.stored.state
        entry.sync_status = result.stored.sync_status
