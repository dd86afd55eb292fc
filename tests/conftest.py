from __future__ import annotations

import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from sage_study.db import Base
from sage_study.db.cards import CardPayload, get_or_create_card
from sage_study.db.scheduling import SchedulingStateStore


@pytest_asyncio.fixture
async def session_factory() -> async_sessionmaker:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> SchedulingStateStore:
    return SchedulingStateStore(session_factory)


@pytest_asyncio.fixture
async def deck(session_factory):
    """Three simple cards and one choice card in deck ``greek-basics``."""
    payloads = [
        CardPayload(id="card-1", deck_id="greek-basics", prompt="σπίτι", answer="house", position=1),
        CardPayload(id="card-2", deck_id="greek-basics", prompt="θάλασσα", answer="sea", position=2),
        CardPayload(id="card-3", deck_id="greek-basics", prompt="ήλιος", answer="sun", position=3),
        CardPayload(
            id="card-4",
            deck_id="greek-basics",
            prompt="Which word means 'water'?",
            answer="νερό",
            kind="choice",
            options=["νερό", "ψωμί", "κρασί"],
            position=4,
        ),
    ]
    cards = []
    async with session_factory() as session:
        async with session.begin():
            for payload in payloads:
                card, _ = await get_or_create_card(session, payload)
                cards.append(card)
    return cards
