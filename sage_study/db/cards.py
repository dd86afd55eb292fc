"""Helpers for working with card persistence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sage_study.study.models import Card, CardKind

from . import CardRecord


@dataclass(slots=True)
class CardPayload:
    """Definition of a card that may be persisted or refreshed."""

    id: str
    deck_id: str
    prompt: str
    answer: str
    kind: str = CardKind.SIMPLE.value
    options: Optional[Sequence[str]] = None
    prompt_image: Optional[str] = None
    answer_image: Optional[str] = None
    position: int = 0

    def normalized(self) -> "CardPayload":
        """Return a payload with leading/trailing whitespace stripped."""
        options = None
        if self.options:
            options = [option.strip() for option in self.options if option and option.strip()]
        return CardPayload(
            id=self.id.strip(),
            deck_id=self.deck_id.strip(),
            prompt=self.prompt.strip(),
            answer=self.answer.strip(),
            kind=self.kind,
            options=options or None,
            prompt_image=self.prompt_image.strip() if isinstance(self.prompt_image, str) else self.prompt_image,
            answer_image=self.answer_image.strip() if isinstance(self.answer_image, str) else self.answer_image,
            position=self.position,
        )


def to_card(record: CardRecord) -> Card:
    """Convert a persisted row into the immutable domain card."""
    return Card(
        id=record.id,
        deck_id=record.deck_id,
        prompt=record.prompt,
        answer=record.answer,
        kind=CardKind(record.kind),
        options=tuple(record.options) if record.options else None,
        prompt_image=record.prompt_image,
        answer_image=record.answer_image,
        position=record.position,
    )


async def get_or_create_card(session: AsyncSession, payload: CardPayload) -> tuple[Card, bool]:
    """Fetch a card by identifier or create it when missing.

    Card content is immutable once stored, so an existing card is returned as is.
    """
    normalized = payload.normalized()
    # Validates kind/options consistency before anything is written.
    candidate = Card(
        id=normalized.id,
        deck_id=normalized.deck_id,
        prompt=normalized.prompt,
        answer=normalized.answer,
        kind=CardKind(normalized.kind),
        options=tuple(normalized.options) if normalized.options else None,
        prompt_image=normalized.prompt_image,
        answer_image=normalized.answer_image,
        position=normalized.position,
    )

    record = await session.get(CardRecord, normalized.id)
    if record is not None:
        return to_card(record), False

    session.add(
        CardRecord(
            id=candidate.id,
            deck_id=candidate.deck_id,
            prompt=candidate.prompt,
            answer=candidate.answer,
            prompt_image=candidate.prompt_image,
            answer_image=candidate.answer_image,
            kind=candidate.kind.value,
            options=list(candidate.options) if candidate.options else None,
            position=candidate.position,
        )
    )
    await session.flush()
    return candidate, True


async def get_deck_cards(session: AsyncSession, deck_id: str) -> list[Card]:
    """Return every card of a deck in deck order."""
    stmt = (
        select(CardRecord)
        .where(CardRecord.deck_id == deck_id)
        .order_by(CardRecord.position, CardRecord.id)
    )
    result = await session.execute(stmt)
    return [to_card(record) for record in result.scalars().all()]


async def get_cards(session: AsyncSession, card_ids: Iterable[str]) -> dict[str, Card]:
    """Return the cards with the given identifiers, keyed by identifier."""
    ids = list(dict.fromkeys(card_ids))
    if not ids:
        return {}
    result = await session.execute(select(CardRecord).where(CardRecord.id.in_(ids)))
    return {record.id: to_card(record) for record in result.scalars().all()}
