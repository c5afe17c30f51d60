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
"""Saga reconciler — recover work lost between a state write and its side effects.

Commands are sent and timers armed only after the new state is durably
written.  A crash (or an exhausted publish retry) in between leaves the
saga waiting for an answer that will never come.  :class:`SagaReconciler`
periodically scans active sagas from the store and:

* re-sends commands that have been in flight longer than
  ``redispatch-after-seconds`` (same delivery id and idempotency key, so
  participants deduplicate them);
* fires overdue timers a crashed scheduler never delivered;
* reports sagas flagged ``stuck`` at CRITICAL level.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sagaflow.saga.config.properties import SagaEngineProperties
from sagaflow.saga.engine.saga_engine import SagaEngine
from sagaflow.saga.engine.transition import pending_timers
from sagaflow.saga.persistence.ports import SagaStatePort

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ReconciliationReport:
    """Counters from one :meth:`SagaReconciler.reconcile` run."""

    scanned: int = 0
    redispatched: int = 0
    timers_fired: int = 0
    stuck: list[str] = field(default_factory=list)
    errors: int = 0


class SagaReconciler:
    """Periodically re-drives active sagas from their persisted state.

    Parameters
    ----------
    store:
        Adapter satisfying :class:`SagaStatePort`.
    engine:
        The engine used to re-send commands and deliver overdue timers.
    properties:
        Supplies ``redispatch_after_seconds`` and the loop interval.
    clock:
        UTC clock (injectable for tests).
    """

    def __init__(
        self,
        store: SagaStatePort,
        engine: SagaEngine,
        properties: SagaEngineProperties | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._engine = engine
        self._props = properties or SagaEngineProperties()
        self._clock = clock
        self._task: asyncio.Task[Any] | None = None

    # ── public API ────────────────────────────────────────────

    async def reconcile(self) -> ReconciliationReport:
        """Run one reconciliation sweep over every active saga."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self._props.redispatch_after_seconds)
        report = ReconciliationReport()

        for instance in await self._store.find_active():
            report.scanned += 1
            cid = instance.correlation_id
            definition = self._engine.registry.get(instance.saga_name)
            if definition is None:
                logger.warning("Skipping saga %s: unknown saga '%s'", cid, instance.saga_name)
                continue
            try:
                sent = await self._engine.redispatch(cid, cutoff)
                report.redispatched += len(sent)
                for timer in pending_timers(definition, instance, now, self._engine.policy):
                    if timer.due_at <= now:
                        await self._engine.on_timer(timer)
                        report.timers_fired += 1
            except Exception:  # noqa: BLE001
                report.errors += 1
                logger.error("Reconciliation of saga %s failed", cid, exc_info=True)

        for instance in await self._store.find_stuck():
            report.stuck.append(instance.correlation_id)
            logger.critical(
                "Saga '%s' %s is stuck in %s and needs operator attention",
                instance.saga_name,
                instance.correlation_id,
                instance.status,
            )

        if report.redispatched or report.timers_fired or report.stuck:
            logger.info(
                "Reconciled %d saga(s): %d command(s) re-sent, %d timer(s) fired, %d stuck",
                report.scanned,
                report.redispatched,
                report.timers_fired,
                len(report.stuck),
            )
        return report

    def start(self, interval_seconds: float | None = None) -> None:
        """Run :meth:`reconcile` in a fixed-delay background loop."""
        if self._task is not None:
            return
        interval = interval_seconds if interval_seconds is not None else self._props.reconciliation_interval_seconds
        self._task = asyncio.create_task(self._run_loop(interval))
        self._task.add_done_callback(self._loop_done_callback)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── private ───────────────────────────────────────────────

    async def _run_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile()
            except Exception:  # noqa: BLE001
                logger.error("Reconciliation sweep failed", exc_info=True)

    @staticmethod
    def _loop_done_callback(task: asyncio.Task[Any]) -> None:
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.error("Reconciliation loop failed: %s", exc, exc_info=exc)
