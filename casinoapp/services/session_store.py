"""Live game sessions, their inboxes and the active-player tracker."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import Counter, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Deque,
    Dict,
    Generic,
    Hashable,
    List,
    Optional,
    TypeVar,
)

from casinoapp.actions import PlayerAction
from casinoapp.entities import (
    ChannelId,
    GameType,
    Money,
    PlayerId,
    SessionAlreadyActiveError,
)
from casinoapp.gateway import MessageHandle
from casinoapp.metrics import DROPPED_ACTION_COUNTER
from casinoapp.utils.time_utils import now_utc


class SessionInbox:
    """Input channel owned by a single session task.

    With ``capacity == 0`` the inbox is a rendezvous: an action is accepted
    only while the owner is blocked in :meth:`receive`, so double clicks
    that arrive mid-transition are dropped rather than replayed later.
    A positive capacity buffers that many pending actions.
    """

    def __init__(self, capacity: int = 0) -> None:
        self._capacity = max(0, capacity)
        self._buffer: Deque[PlayerAction] = deque()
        self._waiter: Optional[asyncio.Future[PlayerAction]] = None

    @property
    def waiting(self) -> bool:
        return self._waiter is not None and not self._waiter.done()

    def offer(self, action: PlayerAction) -> bool:
        """Deliver ``action`` without blocking; return ``False`` if dropped."""

        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(action)
            self._waiter = None
            return True
        if len(self._buffer) < self._capacity:
            self._buffer.append(action)
            return True
        return False

    async def receive(self, timeout: Optional[float]) -> Optional[PlayerAction]:
        """Wait for the next action; ``None`` means the timeout elapsed."""

        if self._buffer:
            return self._buffer.popleft()

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[PlayerAction] = loop.create_future()
        self._waiter = waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            # An action delivered in the same loop iteration as the timeout
            # still counts.
            if waiter.done() and not waiter.cancelled():
                return waiter.result()
            return None
        finally:
            if self._waiter is waiter:
                self._waiter = None


@dataclass(eq=False)
class GameSession:
    """State shared by every single-owner game session."""

    player_id: PlayerId
    wager: Money
    channel_id: ChannelId
    created_at: dt.datetime = field(default_factory=now_utc)
    inbox: SessionInbox = field(default_factory=SessionInbox)
    handle: Optional[MessageHandle] = None
    settled: bool = False

    @property
    def total_staked(self) -> Money:
        """Coins debited from the player for this session so far."""

        return self.wager


S = TypeVar("S")


class SessionStore(Generic[S]):
    """Uniqueness-enforcing map from session key to live session.

    The lock is held only while the map is read or mutated. Delivering an
    action to a session happens after the lock is released.
    """

    def __init__(
        self, game_type: GameType, *, logger: Optional[logging.Logger] = None
    ) -> None:
        self._game_type = game_type
        self._sessions: Dict[Hashable, S] = {}
        self._lock = asyncio.Lock()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def game_type(self) -> GameType:
        return self._game_type

    async def create(self, key: Hashable, session: S) -> None:
        """Register ``session`` under ``key``.

        Raises:
            SessionAlreadyActiveError: If a session is already registered.
        """

        async with self._lock:
            if key in self._sessions:
                raise SessionAlreadyActiveError(self._game_type, key)
            self._sessions[key] = session

    async def lookup(self, key: Hashable) -> Optional[S]:
        async with self._lock:
            return self._sessions.get(key)

    async def contains(self, key: Hashable) -> bool:
        async with self._lock:
            return key in self._sessions

    async def delete(self, key: Hashable, session: Optional[S] = None) -> Optional[S]:
        """Remove the session for ``key``.

        When ``session`` is given the entry is removed only if it is that
        exact object, so a finished task never evicts a newer session.
        """

        async with self._lock:
            current = self._sessions.get(key)
            if current is None:
                return None
            if session is not None and current is not session:
                return None
            return self._sessions.pop(key)

    async def active_keys(self) -> List[Hashable]:
        async with self._lock:
            return list(self._sessions.keys())

    async def dispatch(self, key: Hashable, action: PlayerAction) -> bool:
        async with self._lock:
            session = self._sessions.get(key)
        if session is None:
            return False
        inbox: Optional[SessionInbox] = getattr(session, "inbox", None)
        if inbox is None or not inbox.offer(action):
            DROPPED_ACTION_COUNTER.labels(game=self._game_type.value).inc()
            self._logger.debug(
                "Dropped player action for busy session",
                extra={
                    "category": "session",
                    "game_type": self._game_type,
                    "user_id": action.actor_id,
                    "action": action.action,
                },
            )
            return False
        return True

    def __len__(self) -> int:
        return len(self._sessions)


class SessionRegistry:
    """One :class:`SessionStore` per game type, built once at startup."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._stores: Dict[GameType, SessionStore[Any]] = {
            game_type: SessionStore(game_type, logger=self._logger)
            for game_type in GameType
        }

    def store(self, game_type: GameType) -> SessionStore[Any]:
        return self._stores[game_type]

    async def dispatch(self, action: PlayerAction) -> bool:
        return await self.store(action.game_type).dispatch(action.session_key, action)

    def total_active(self) -> int:
        return sum(len(store) for store in self._stores.values())


class ActivePlayerTracker:
    """Counted set of players currently inside a game.

    A player may be in a queued game and a blackjack hand at once; they
    become idle only when every game has released them.
    """

    def __init__(self, *, poll_interval: float = 1.0) -> None:
        self._counts: Counter[PlayerId] = Counter()
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def mark_active(self, player_id: PlayerId) -> None:
        async with self._lock:
            self._counts[player_id] += 1

    async def mark_idle(self, player_id: PlayerId) -> None:
        async with self._lock:
            remaining = self._counts[player_id] - 1
            if remaining > 0:
                self._counts[player_id] = remaining
            else:
                self._counts.pop(player_id, None)

    def is_active(self, player_id: PlayerId) -> bool:
        return self._counts.get(player_id, 0) > 0

    def active_players(self) -> List[PlayerId]:
        return list(self._counts.keys())

    @asynccontextmanager
    async def track(self, player_id: PlayerId) -> AsyncIterator[None]:
        await self.mark_active(player_id)
        try:
            yield
        finally:
            await self.mark_idle(player_id)

    async def wait_until_idle(
        self,
        player_id: PlayerId,
        *,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """Poll until ``player_id`` has no running game.

        Returns:
            ``True`` once the player is idle, ``False`` if ``timeout``
            elapsed first.
        """

        interval = poll_interval if poll_interval is not None else self._poll_interval
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.is_active(player_id):
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)
        return True


__all__ = [
    "ActivePlayerTracker",
    "GameSession",
    "SessionInbox",
    "SessionRegistry",
    "SessionStore",
]
