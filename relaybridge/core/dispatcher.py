"""Fire-and-forget background tasks for accepted triggers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack

from relaybridge.core.models import InboundTrigger
from relaybridge.observability.logging import log_event
from relaybridge.observability.metrics import emit_counter
from relaybridge.util.logger import logger


class BackgroundDispatcher:
    """
    Owns the per-trigger tasks the webhook never awaits.

    Defaults keep triggers fully independent. ``max_inflight`` > 0 caps how many
    pipelines run at once; ``serialize_per_user`` runs triggers sharing a key
    (uid, else messageId) one at a time in arrival order.
    """

    def __init__(
        self,
        *,
        handler: Callable[[InboundTrigger], Awaitable[None]],
        max_inflight: int = 0,
        serialize_per_user: bool = False,
    ) -> None:
        self._handler = handler
        self._semaphore = asyncio.Semaphore(max_inflight) if max_inflight > 0 else None
        self._serialize_per_user = serialize_per_user
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._key_waiters: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    def spawn(self, trigger: InboundTrigger) -> asyncio.Task:
        task = asyncio.create_task(self._run(trigger), name=f"relaybridge-trigger-{trigger.correlation_id}")
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_done(done, trigger))
        return task

    async def _run(self, trigger: InboundTrigger) -> None:
        async with AsyncExitStack() as stack:
            if self._serialize_per_user:
                await stack.enter_async_context(self._key_lock(trigger.serialization_key))
            if self._semaphore is not None:
                await stack.enter_async_context(self._semaphore)
            await self._handler(trigger)

    def _key_lock(self, key: str) -> "_KeyedLock":
        return _KeyedLock(self, key)

    def _on_done(self, task: asyncio.Task, trigger: InboundTrigger) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("trigger task cancelled message_id=%s", trigger.correlation_id)
            return
        exc = task.exception()
        if exc is None:
            return
        # 后台失败只进日志，ack 早已返回给调用方
        emit_counter("relay_delivery_failure")
        log_event("delivery_failed", message_id=trigger.correlation_id, error=exc)
        logger.error(
            "failed to process message message_id=%s",
            trigger.correlation_id,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    async def drain(self, timeout_seconds: float) -> int:
        """Wait for in-flight triggers without cancelling; returns how many are left."""

        pending = set(self._tasks)
        if not pending:
            return 0
        logger.info("draining background triggers count=%d timeout=%.1fs", len(pending), timeout_seconds)
        _, still_pending = await asyncio.wait(pending, timeout=max(0.0, timeout_seconds))
        if still_pending:
            logger.warning("background triggers still running after drain count=%d", len(still_pending))
        return len(still_pending)


class _KeyedLock:
    def __init__(self, dispatcher: BackgroundDispatcher, key: str) -> None:
        self._dispatcher = dispatcher
        self._key = key

    async def __aenter__(self) -> None:
        locks = self._dispatcher._key_locks
        waiters = self._dispatcher._key_waiters
        lock = locks.setdefault(self._key, asyncio.Lock())
        waiters[self._key] = waiters.get(self._key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_slot()
            raise

    async def __aexit__(self, *exc_info: object) -> None:
        self._dispatcher._key_locks[self._key].release()
        self._release_slot()

    def _release_slot(self) -> None:
        waiters = self._dispatcher._key_waiters
        remaining = waiters.get(self._key, 1) - 1
        if remaining <= 0:
            waiters.pop(self._key, None)
            self._dispatcher._key_locks.pop(self._key, None)
        else:
            waiters[self._key] = remaining
