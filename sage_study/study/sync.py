"""Reconciliation of optimistic reviews with the remote scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sage_study.db.scheduling import SchedulingStateStore
from sage_study.services.remote_scheduler import RemoteScheduler, RemoteSchedulerError, ReviewRequest
from sage_study.study.models import PendingReview, StoredState


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ReconciliationStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED_WILL_RETRY = "failed_will_retry"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    """Outcome of submitting one queued review to the remote scheduler."""

    pending: PendingReview
    status: ReconciliationStatus
    stored: Optional[StoredState] = None
    error: Optional[str] = None

    @property
    def card_id(self) -> str:
        return self.pending.card_id


class ReviewSynchronizer:
    """Drain the review outbox into the remote scheduler.

    A successful submission overwrites the stored state for the card with the
    authoritative one. A failed submission leaves the optimistic state in place
    and keeps the outbox entry for a later :meth:`sync_pending`, until
    ``max_attempts`` failures have been counted.
    """

    def __init__(
        self,
        store: SchedulingStateStore,
        remote: RemoteScheduler,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._store = store
        self._remote = remote
        self._max_attempts = max_attempts
        self._in_flight: set[int] = set()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def is_in_flight(self, pending_id: int) -> bool:
        return pending_id in self._in_flight

    async def submit(self, pending: PendingReview) -> ReconciliationResult:
        self._in_flight.add(pending.id)
        try:
            request = ReviewRequest(
                card_id=pending.card_id,
                rating=pending.rating,
                review_time_ms=pending.review_time_ms,
            )
            try:
                authoritative = await self._remote.submit_review(request)
            except RemoteSchedulerError as exc:
                LOGGER.warning(
                    "Reconciliation of card %s for learner %s failed: %s",
                    pending.card_id,
                    pending.learner_id,
                    exc,
                )
                retained = await self._store.mark_attempt_failed(pending, str(exc), self._max_attempts)
                status = ReconciliationStatus.FAILED_WILL_RETRY if retained else ReconciliationStatus.DISCARDED
                return ReconciliationResult(pending=pending, status=status, error=str(exc))

            stored = await self._store.apply_authoritative(pending, authoritative)
            LOGGER.info(
                "Card %s for learner %s confirmed as %s, due %s.",
                pending.card_id,
                pending.learner_id,
                stored.state.phase.value,
                stored.state.due.isoformat(),
            )
            return ReconciliationResult(pending=pending, status=ReconciliationStatus.CONFIRMED, stored=stored)
        finally:
            self._in_flight.discard(pending.id)

    async def sync_pending(self, learner_id: Optional[str] = None) -> list[ReconciliationResult]:
        """Replay queued reviews oldest first, skipping those already being submitted."""
        pending_reviews = await self._store.list_pending_reviews(learner_id)
        results: list[ReconciliationResult] = []
        for pending in pending_reviews:
            if pending.id in self._in_flight:
                continue
            results.append(await self.submit(pending))
        if results:
            LOGGER.info(
                "Synced %s queued review(s)%s.",
                len(results),
                f" for learner {learner_id}" if learner_id else "",
            )
        return results
