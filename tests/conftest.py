import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from pairchat.repositories.memory import InMemoryConversationStore, InMemoryMessageLog
from pairchat.schemas.participant import Participant, ParticipantProfile
from pairchat.utils.realtime_bus import LocalBus


class StepClock:
    """Deterministic server clock: every call advances by ``step``."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def conversation_store(bus, clock):
    return InMemoryConversationStore(bus, clock=clock)


@pytest.fixture
def message_log(bus, clock):
    return InMemoryMessageLog(bus, clock=clock)


@pytest.fixture
def alice():
    return Participant(id="u1", profile=ParticipantProfile(name="Alice", avatar_ref="alice.png"))


@pytest.fixture
def bob():
    return Participant(id="u2", profile=ParticipantProfile(name="Bob"))


@pytest.fixture
def carol():
    return Participant(id="u3", profile=ParticipantProfile(name="Carol"))


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout=1.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def settle():
    async def _settle(rounds=20):
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
