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
"""Tests for TimeoutScheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

from sagaflow.saga.core.instance import SagaInstance, StepState
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.definition.saga_registry import SagaRegistry
from sagaflow.saga.definition.step_definition import StepDefinition
from sagaflow.saga.engine.signals import TimerRequest
from sagaflow.saga.engine.transition import TransitionPolicy
from sagaflow.saga.persistence.memory import InMemorySagaStateStore
from sagaflow.saga.scheduling.timeout_scheduler import TimeoutScheduler
from sagaflow.saga.types import SagaStatus, StepStatus, TimerKind

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ── Helpers ──────────────────────────────────────────────────


def _timer(step: str = "a", kind: TimerKind = TimerKind.STEP_TIMEOUT, due_in: float = 0.0) -> TimerRequest:
    return TimerRequest(kind, "saga-1", step, NOW + timedelta(seconds=due_in))


def _scheduler(callback: AsyncMock) -> TimeoutScheduler:
    return TimeoutScheduler(TransitionPolicy(default_step_timeout_ms=1000), callback, clock=lambda: NOW)


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ── Tests ────────────────────────────────────────────────────


class TestScheduling:
    async def test_due_timer_fires_callback(self) -> None:
        callback = AsyncMock()
        scheduler = _scheduler(callback)
        timer = _timer()

        scheduler.schedule(timer)
        await _drain()

        callback.assert_awaited_once_with(timer)
        assert scheduler.pending == []

    async def test_future_timer_stays_pending(self) -> None:
        callback = AsyncMock()
        scheduler = _scheduler(callback)

        scheduler.schedule(_timer(due_in=3600))
        await _drain()

        callback.assert_not_awaited()
        assert scheduler.pending == [("saga-1", "a", TimerKind.STEP_TIMEOUT)]
        await scheduler.stop()

    async def test_rescheduling_replaces_previous(self) -> None:
        callback = AsyncMock()
        scheduler = _scheduler(callback)

        scheduler.schedule(_timer(due_in=3600))
        replacement = _timer()
        scheduler.schedule(replacement)
        await _drain()

        callback.assert_awaited_once_with(replacement)

    async def test_cancel_step_removes_every_kind(self) -> None:
        callback = AsyncMock()
        scheduler = _scheduler(callback)
        scheduler.schedule(_timer(due_in=3600))
        scheduler.schedule(_timer(kind=TimerKind.COMPENSATION_RETRY, due_in=3600))
        scheduler.schedule(_timer(step="b", due_in=3600))

        scheduler.cancel("saga-1", "a")

        assert scheduler.pending == [("saga-1", "b", TimerKind.STEP_TIMEOUT)]
        await scheduler.stop()

    async def test_cancel_saga(self) -> None:
        scheduler = _scheduler(AsyncMock())
        scheduler.schedule(_timer(due_in=3600))
        scheduler.schedule(_timer(step="b", due_in=3600))

        scheduler.cancel_saga("saga-1")

        assert scheduler.pending == []

    async def test_bind_sets_callback(self) -> None:
        scheduler = TimeoutScheduler(clock=lambda: NOW)
        callback = AsyncMock()
        scheduler.bind(callback)

        scheduler.schedule(_timer())
        await _drain()

        callback.assert_awaited_once()

    async def test_failing_callback_does_not_break_scheduler(self) -> None:
        callback = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = _scheduler(callback)

        scheduler.schedule(_timer())
        await _drain()
        scheduler.schedule(_timer(step="b"))
        await _drain()

        assert callback.await_count == 2


class TestRehydration:
    async def test_start_rebuilds_timers_from_active_sagas(self) -> None:
        definition = SagaDefinition.of("order", [StepDefinition(name="a", forward_command="DoA")])
        store = InMemorySagaStateStore()
        running = SagaInstance(
            correlation_id="saga-1",
            saga_name="order",
            created_at=NOW,
            updated_at=NOW,
            steps={"a": StepState(name="a", status=StepStatus.IN_FLIGHT, dispatched_at=NOW)},
        )
        finished = SagaInstance(
            correlation_id="saga-2",
            saga_name="order",
            created_at=NOW,
            updated_at=NOW,
            status=SagaStatus.COMPLETED,
            steps={"a": StepState(name="a", status=StepStatus.COMPLETED)},
        )
        orphan = SagaInstance(correlation_id="saga-3", saga_name="retired", created_at=NOW, updated_at=NOW)
        for inst in (running, finished, orphan):
            await store.create(inst)
        scheduler = _scheduler(AsyncMock())

        armed = await scheduler.start(store, SagaRegistry([definition]))

        assert armed == 1
        assert scheduler.pending == [("saga-1", "a", TimerKind.STEP_TIMEOUT)]
        await scheduler.stop()
        assert scheduler.pending == []
