"""Client for the authoritative remote scheduling service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

import httpx

from sage_study.study.models import AuthoritativeState, Phase, Rating, ensure_utc


LOGGER = logging.getLogger(__name__)

REVIEW_PATH = "/api/study/review"


class RemoteSchedulerError(RuntimeError):
    """Raised when the remote scheduler cannot produce an authoritative state."""


@dataclass(frozen=True, slots=True)
class ReviewRequest:
    """Body of a review submission."""

    card_id: str
    rating: Rating
    review_time_ms: int = 0

    def __post_init__(self) -> None:
        if not self.card_id:
            raise ValueError("card_id is required.")
        if not isinstance(self.review_time_ms, int) or self.review_time_ms < 0:
            raise ValueError("review_time_ms must be a non-negative integer.")

    def to_payload(self) -> dict[str, Any]:
        return {
            "cardId": self.card_id,
            "rating": int(self.rating),
            "reviewTimeMs": self.review_time_ms,
        }


class RemoteScheduler(Protocol):
    """Anything able to turn a review submission into an authoritative state."""

    async def submit_review(self, request: ReviewRequest) -> AuthoritativeState:
        ...


def _parse_due(raw: object) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise RemoteSchedulerError("Authoritative state is missing a due timestamp.")
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise RemoteSchedulerError(f"Malformed due timestamp {raw!r}.") from exc


def parse_review_response(payload: object) -> AuthoritativeState:
    """Validate a review response body and extract the authoritative next state."""
    if not isinstance(payload, Mapping):
        raise RemoteSchedulerError("Review response is not a JSON object.")

    if not payload.get("success"):
        error = payload.get("error") or "Remote scheduler reported a failure."
        raise RemoteSchedulerError(str(error))

    data = payload.get("data")
    next_state = data.get("nextState") if isinstance(data, Mapping) else None
    if not isinstance(next_state, Mapping):
        raise RemoteSchedulerError("Review response carries no nextState.")

    # The service has been seen to name the phase field either "phase" or "state".
    raw_phase = next_state.get("phase", next_state.get("state"))
    try:
        phase = Phase(raw_phase)
    except ValueError as exc:
        raise RemoteSchedulerError(f"Unknown phase {raw_phase!r} in review response.") from exc

    try:
        stability = float(next_state["stability"])
        difficulty = float(next_state["difficulty"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RemoteSchedulerError("Review response has invalid stability or difficulty.") from exc
    if stability <= 0:
        raise RemoteSchedulerError(f"Review response has non-positive stability {stability}.")

    return AuthoritativeState(
        stability=stability,
        difficulty=difficulty,
        phase=phase,
        due=_parse_due(next_state.get("due")),
    )


class RemoteSchedulerClient:
    """Submit reviews to the remote scheduler over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
        )

    async def submit_review(self, request: ReviewRequest) -> AuthoritativeState:
        try:
            response = await self._client.post(REVIEW_PATH, json=request.to_payload())
        except httpx.HTTPError as exc:
            raise RemoteSchedulerError(f"Review submission for card {request.card_id} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error:
            detail = payload.get("error") if isinstance(payload, Mapping) else None
            raise RemoteSchedulerError(
                f"Remote scheduler returned HTTP {response.status_code}"
                + (f": {detail}" if detail else ".")
            )

        state = parse_review_response(payload)
        LOGGER.debug("Remote scheduler confirmed card %s as %s.", request.card_id, state.phase.value)
        return state

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_remote_scheduler(
    base_url: Optional[str],
    *,
    timeout: float = 30.0,
    auth_token: Optional[str] = None,
) -> Optional[RemoteSchedulerClient]:
    """Create a configured client, or ``None`` when no service URL is configured."""
    if not base_url:
        LOGGER.info("No remote scheduler configured; reviews will stay optimistic.")
        return None
    return RemoteSchedulerClient(base_url, timeout=timeout, auth_token=auth_token)
