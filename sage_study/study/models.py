"""Domain types shared by the scheduler, the session manager and the stores."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, Iterator, Optional, Tuple


class Rating(IntEnum):
    """Learner-reported recall quality, ordered from worst to best."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @property
    def key(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: object) -> "Rating":
        """Convert user input (enum, 1-4 or a rating name) into a Rating."""
        if isinstance(value, Rating):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unknown rating value: {value!r}.")
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise ValueError(f"Rating must be between 1 and 4, got {value}.") from None
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized in cls.__members__:
                return cls[normalized]
        raise ValueError(f"Unknown rating value: {value!r}.")


class Phase(str, Enum):
    """Lifecycle stage of a card's scheduling state."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


class CardKind(str, Enum):
    SIMPLE = "simple"
    CHOICE = "choice"


class SyncStatus(str, Enum):
    """Whether a stored scheduling state was confirmed by the remote scheduler."""

    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class Card:
    """Immutable card content as held by the card store."""

    id: str
    deck_id: str
    prompt: str
    answer: str
    kind: CardKind = CardKind.SIMPLE
    options: Optional[Tuple[str, ...]] = None
    prompt_image: Optional[str] = None
    answer_image: Optional[str] = None
    position: int = 0

    def __post_init__(self) -> None:
        if self.kind is CardKind.CHOICE and not self.options:
            raise ValueError(f"Choice card {self.id} requires options.")
        if self.kind is CardKind.SIMPLE and self.options:
            raise ValueError(f"Simple card {self.id} must not carry options.")


@dataclass(frozen=True, slots=True)
class SchedulingState:
    """Memory-model belief state for one card and one learner."""

    stability: float
    difficulty: float
    elapsed_days: float
    scheduled_days: float
    reps: int
    lapses: int
    phase: Phase
    due: datetime
    last_review: Optional[datetime] = None
    step: int = 0

    @classmethod
    def new(cls, now: datetime) -> "SchedulingState":
        """State given to a card the learner has never rated."""
        return cls(
            stability=1.0,
            difficulty=5.0,
            elapsed_days=0.0,
            scheduled_days=0.0,
            reps=0,
            lapses=0,
            phase=Phase.NEW,
            due=ensure_utc(now),
            last_review=None,
            step=0,
        )

    def validate(self) -> "SchedulingState":
        """Raise ValueError when the state breaks a documented invariant."""
        if not self.stability > 0:
            raise ValueError(f"stability must be positive, got {self.stability}")
        if self.reps < 0 or self.lapses < 0 or self.step < 0:
            raise ValueError("counters must not be negative")
        if self.elapsed_days < 0 or self.scheduled_days < 0:
            raise ValueError("day counts must not be negative")
        if self.last_review is not None and self.due < self.last_review:
            raise ValueError("due precedes last review")
        return self

    def with_changes(self, **changes: object) -> "SchedulingState":
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class IntervalPreviews:
    """Scheduled interval, in days, that each rating would produce."""

    again: float
    hard: float
    good: float
    easy: float

    def __getitem__(self, rating: Rating) -> float:
        return getattr(self, Rating(rating).key)

    def __iter__(self) -> Iterator[Tuple[Rating, float]]:
        for rating in Rating:
            yield rating, self[rating]

    def as_dict(self) -> Dict[str, float]:
        return {rating.key: days for rating, days in self}


@dataclass(frozen=True, slots=True)
class ScheduleUpdate:
    """Outcome of applying one rating: the committed state plus the previews."""

    next_state: SchedulingState
    previews: IntervalPreviews


@dataclass(frozen=True, slots=True)
class AuthoritativeState:
    """Scheduling fields returned by the remote scheduler for one review."""

    stability: float
    difficulty: float
    phase: Phase
    due: datetime


@dataclass(frozen=True, slots=True)
class ReviewEvent:
    """Append-only record of one rating submission."""

    card_id: str
    learner_id: str
    rating: Rating
    phase: Phase
    elapsed_days: float
    scheduled_days: float
    review_time_ms: int
    reviewed_at: datetime


@dataclass(frozen=True, slots=True)
class StoredState:
    """A scheduling state as persisted, tagged with its reconciliation status."""

    card_id: str
    learner_id: str
    state: SchedulingState
    sync_status: SyncStatus = SyncStatus.OPTIMISTIC


@dataclass(frozen=True, slots=True)
class PendingReview:
    """Review submission waiting for confirmation by the remote scheduler."""

    id: int
    card_id: str
    learner_id: str
    rating: Rating
    review_time_ms: int
    reviewed_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DueCard:
    """A card eligible for study together with its stored state, if any."""

    card: Card
    stored: Optional[StoredState] = None

    @property
    def is_new(self) -> bool:
        return self.stored is None or self.stored.state.phase is Phase.NEW


@dataclass(frozen=True, slots=True)
class SessionSummary:
    """Duration record emitted when a study session ends."""

    learner_id: str
    deck_id: str
    started_at: datetime
    ended_at: datetime
    reviewed: int
    correct: int
    card_count: int
    duration_ms: int = field(init=False)

    def __post_init__(self) -> None:
        elapsed = ensure_utc(self.ended_at) - ensure_utc(self.started_at)
        object.__setattr__(self, "duration_ms", max(0, int(elapsed.total_seconds() * 1000)))
