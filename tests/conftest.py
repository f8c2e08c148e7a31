"""Pytest configuration shared across the test suite."""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import fakeredis
import fakeredis.aioredis
import pytest

from casinoapp.entities import RenderFailureError
from casinoapp.gateway import MessageHandle, RenderState
from casinoapp.games.base import EngineContext
from casinoapp.ledger import RedisLedger
from casinoapp.services.session_store import ActivePlayerTracker, SessionRegistry


class RecordingView:
    """In-memory ``GameView`` that records every call."""

    def __init__(self) -> None:
        self.initial: List[Tuple[int, int, RenderState, object]] = []
        self.updates: List[Tuple[MessageHandle, RenderState]] = []
        self.terminal: List[Tuple[MessageHandle, RenderState]] = []
        self.notifications: List[Tuple[int, str, Optional[int]]] = []
        self.fail_initial = False
        self._message_ids = itertools.count(1000)

    async def render_initial(self, channel_id, player_id, state, session_key):
        if self.fail_initial:
            raise RenderFailureError("simulated render failure")
        self.initial.append((channel_id, player_id, state, session_key))
        return MessageHandle(channel_id=channel_id, message_id=next(self._message_ids))

    async def render_update(self, handle, state, session_key):
        self.updates.append((handle, state))

    async def render_terminal(self, handle, state):
        self.terminal.append((handle, state))

    async def notify(self, channel_id, text, *, player_id=None):
        self.notifications.append((channel_id, text, player_id))

    @property
    def last_state(self) -> Optional[RenderState]:
        if self.terminal:
            return self.terminal[-1][1]
        if self.updates:
            return self.updates[-1][1]
        if self.initial:
            return self.initial[-1][2]
        return None


class FlakyLedger:
    """Ledger wrapper whose credits fail for the players in ``failing``."""

    def __init__(self, inner: RedisLedger) -> None:
        self._inner = inner
        self.failing: Set[int] = set()
        self.credit_attempts = 0

    async def get_balance(self, player_id):
        return await self._inner.get_balance(player_id)

    async def add_coins(self, player_id, amount):
        self.credit_attempts += 1
        if player_id in self.failing:
            raise ConnectionError("ledger unavailable")
        return await self._inner.add_coins(player_id, amount)

    async def remove_coins(self, player_id, amount):
        return await self._inner.remove_coins(player_id, amount)

    async def transfer(self, from_id, to_id, amount):
        await self._inner.transfer(from_id, to_id, amount)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def redis_pool():
    server = fakeredis.FakeServer()
    return fakeredis.aioredis.FakeRedis(server=server)


@pytest.fixture
def ledger(redis_pool):
    return RedisLedger(redis_pool)


@pytest.fixture
def flaky_ledger(ledger):
    return FlakyLedger(ledger)


@pytest.fixture
def recording_view():
    return RecordingView()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def tracker():
    return ActivePlayerTracker(poll_interval=0.01)


@pytest.fixture
def engine_context(ledger, recording_view, registry, tracker):
    return EngineContext(
        ledger=ledger,
        view=recording_view,
        sessions=registry,
        tracker=tracker,
    )


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def wait_for_input(registry):
    """Return a coroutine that waits until a session blocks on its inbox."""

    async def _wait(game_type, key, timeout: float = 2.0):
        store = registry.store(game_type)
        await _eventually(lambda: key in store._sessions, timeout)
        session = await store.lookup(key)
        await _eventually(lambda: session.inbox.waiting, timeout)
        return session

    return _wait
