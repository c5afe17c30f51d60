# Copyright 2026 Firefly Software Solutions Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Timeout scheduler — durable-by-rehydration wake-ups for saga deadlines.

Timers are plain asyncio tasks; nothing about them is persisted.  Instead,
:meth:`TimeoutScheduler.start` rebuilds every deadline implied by the
persisted saga state, so a restart loses no timeout.  A timer firing late
or twice is harmless: the engine ignores wake-ups that no longer match the
instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from sagaflow.saga.definition.saga_registry import SagaRegistry
from sagaflow.saga.engine.signals import TimerRequest
from sagaflow.saga.engine.transition import TransitionPolicy, pending_timers
from sagaflow.saga.persistence.ports import SagaStatePort
from sagaflow.saga.types import TimerKind

logger = logging.getLogger(__name__)

TimerCallback = Callable[[TimerRequest], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TimeoutScheduler:
    """Runs one asyncio task per ``(correlation_id, step_name, kind)``.

    Usage::

        scheduler = TimeoutScheduler(policy)
        scheduler.bind(engine.on_timer)
        await scheduler.start(store, registry)
        # ... application runs ...
        await scheduler.stop()
    """

    def __init__(
        self,
        policy: TransitionPolicy | None = None,
        callback: TimerCallback | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._policy = policy or TransitionPolicy()
        self._callback = callback
        self._clock = clock
        self._tasks: dict[tuple[str, str, TimerKind], asyncio.Task[Any]] = {}

    def bind(self, callback: TimerCallback) -> None:
        """Set the coroutine invoked when a timer is due (normally ``SagaEngine.on_timer``)."""
        self._callback = callback

    @property
    def pending(self) -> list[tuple[str, str, TimerKind]]:
        return list(self._tasks)

    # -- scheduling ---------------------------------------------------------

    def schedule(self, timer: TimerRequest) -> None:
        """Arm *timer*, replacing any earlier timer with the same key."""
        previous = self._tasks.pop(timer.key, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.create_task(self._fire_when_due(timer))
        task.add_done_callback(self._task_done_callback)
        self._tasks[timer.key] = task
        logger.debug("Scheduled %s for %s/%s at %s", timer.kind, timer.correlation_id, timer.step_name, timer.due_at)

    def cancel(self, correlation_id: str, step_name: str) -> None:
        """Best-effort cancellation of every timer armed for one step."""
        for kind in TimerKind:
            task = self._tasks.pop((correlation_id, step_name, kind), None)
            if task is not None:
                task.cancel()

    def cancel_saga(self, correlation_id: str) -> None:
        """Cancel every timer armed for one saga."""
        for key in [k for k in self._tasks if k[0] == correlation_id]:
            self._tasks.pop(key).cancel()

    # -- lifecycle ----------------------------------------------------------

    async def start(self, store: SagaStatePort, registry: SagaRegistry) -> int:
        """Rehydrate timers from every active instance. Return the number armed."""
        now = self._clock()
        count = 0
        for instance in await store.find_active():
            definition = registry.get(instance.saga_name)
            if definition is None:
                logger.warning(
                    "Cannot rehydrate timers for saga %s: unknown saga '%s'",
                    instance.correlation_id,
                    instance.saga_name,
                )
                continue
            for timer in pending_timers(definition, instance, now, self._policy):
                self.schedule(timer)
                count += 1
        logger.info("Timeout scheduler started with %d rehydrated timer(s)", count)
        return count

    async def stop(self) -> None:
        """Cancel all pending timers."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _fire_when_due(self, timer: TimerRequest) -> None:
        delay = (timer.due_at - self._clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        # Detach first so the callback may re-arm or cancel this key.
        if self._tasks.get(timer.key) is asyncio.current_task():
            del self._tasks[timer.key]
        if self._callback is None:
            logger.warning("Timer %s for %s fired with no callback bound", timer.kind, timer.correlation_id)
            return
        await self._callback(timer)

    @staticmethod
    def _task_done_callback(task: asyncio.Task[Any]) -> None:
        """Log errors from timer tasks."""
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.error("Timer task failed: %s", exc, exc_info=exc)
