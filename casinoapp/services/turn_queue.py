"""Global FIFO turn queue serialising queue-routed games."""

from __future__ import annotations

import asyncio
import logging
import time
from asyncio import Queue
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from casinoapp.entities import PlayerId, QueueFullError
from casinoapp.metrics import TURN_QUEUE_DEPTH, TURN_QUEUE_WAIT_SECONDS
from casinoapp.services.session_store import ActivePlayerTracker


@dataclass(eq=False)
class GameJob:
    """A unit of work for the turn queue.

    Attributes:
        player_id: Player whose game this job runs.
        run: Coroutine factory executing the whole game, including its
            wait-for-action loop. The job is finished when it returns.
        on_queued: Optional callback receiving the number of jobs ahead
            when the job has to wait.
        label: Short description used in logs.
        completion: Resolved by the worker once ``run`` exits, however it
            exits. Callers may await it to learn when the game is over.
    """

    player_id: PlayerId
    run: Callable[[], Awaitable[None]]
    on_queued: Optional[Callable[[int], Awaitable[None]]] = None
    label: str = ""
    enqueued_at: float = field(default_factory=time.monotonic)
    completion: "asyncio.Future[None]" = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not callable(self.run):
            raise TypeError("GameJob.run must be callable")
        self.completion = asyncio.get_running_loop().create_future()

    def _resolve(self, error: Optional[BaseException] = None) -> None:
        if self.completion.done():
            return
        if error is None:
            self.completion.set_result(None)
        elif isinstance(error, asyncio.CancelledError):
            self.completion.cancel()
        else:
            self.completion.set_exception(error)
            # Observed by the worker log; callers are not required to await.
            self.completion.exception()


class TurnQueue:
    """Bounded FIFO of :class:`GameJob` consumed by exactly one worker."""

    def __init__(
        self,
        tracker: ActivePlayerTracker,
        *,
        capacity: int = 100,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._tracker = tracker
        self._queue: Queue[GameJob] = Queue(maxsize=max(1, capacity))
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()
        self._current: Optional[GameJob] = None
        self._logger = logger or logging.getLogger(__name__)

    async def enqueue(self, job: GameJob) -> int:
        """Append ``job`` to the queue.

        Args:
            job: The job to schedule.

        Returns:
            Number of jobs that were already waiting ahead of ``job``.

        Raises:
            QueueFullError: If the queue is at capacity.
        """

        depth = self._queue.qsize()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as exc:
            raise QueueFullError("The game queue is full, try again shortly") from exc
        TURN_QUEUE_DEPTH.set(self._queue.qsize())

        self._logger.info(
            "Game job enqueued",
            extra={
                "category": "queue",
                "user_id": job.player_id,
                "stage": "enqueue",
                "queue_depth": depth,
                "job": job.label,
            },
        )
        if depth > 0 and job.on_queued is not None:
            try:
                await job.on_queued(depth)
            except Exception:
                self._logger.exception(
                    "Queue position notification failed",
                    extra={"category": "queue", "user_id": job.player_id},
                )
        return depth

    def get_queue_depth(self) -> int:
        """Number of jobs waiting, excluding the one currently running."""

        return self._queue.qsize()

    @property
    def current_job(self) -> Optional[GameJob]:
        return self._current

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start the single queue worker."""

        if self._worker_task and not self._worker_task.done():
            return

        if self._shutdown_event.is_set():
            self._shutdown_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        self._worker_task = loop.create_task(self._worker_loop(), name="turn-queue-worker")
        self._logger.info("Turn queue worker started", extra={"category": "queue"})

    async def stop(self) -> None:
        """Stop the worker; the job in flight is cancelled."""

        self._shutdown_event.set()

        if self._worker_task is None:
            return

        task = self._worker_task
        if not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                self._logger.warning(
                    "Turn queue worker stop timed out", extra={"category": "queue"}
                )
            except asyncio.CancelledError:
                pass
        self._worker_task = None
        self._logger.info("Turn queue worker stopped", extra={"category": "queue"})

    async def _worker_loop(self) -> None:
        """Run jobs one at a time until shutdown."""

        while not self._shutdown_event.is_set():
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            TURN_QUEUE_DEPTH.set(self._queue.qsize())
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: GameJob) -> None:
        TURN_QUEUE_WAIT_SECONDS.observe(max(0.0, time.monotonic() - job.enqueued_at))
        self._current = job
        await self._tracker.mark_active(job.player_id)
        error: Optional[BaseException] = None
        try:
            await job.run()
        except asyncio.CancelledError as exc:
            error = exc
            raise
        except Exception as exc:
            error = exc
            self._logger.exception(
                "Game job failed",
                extra={
                    "category": "queue",
                    "user_id": job.player_id,
                    "stage": "run",
                    "job": job.label,
                    "error_type": type(exc).__name__,
                },
            )
        finally:
            self._current = None
            await self._tracker.mark_idle(job.player_id)
            job._resolve(error)


__all__ = ["GameJob", "TurnQueue"]
