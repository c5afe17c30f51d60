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
"""Tests for saga lifecycle event adapters."""

from __future__ import annotations

from unittest.mock import AsyncMock

from structlog.testing import capture_logs

from sagaflow.saga.observability.events import CompositeEventsAdapter, LoggerEventsAdapter
from sagaflow.saga.observability.port import SagaEventsPort
from sagaflow.saga.types import SagaStatus


class TestLoggerEventsAdapter:
    def test_satisfies_port(self) -> None:
        assert isinstance(LoggerEventsAdapter(), SagaEventsPort)

    async def test_progress_events_log_at_info(self) -> None:
        adapter = LoggerEventsAdapter()

        with capture_logs() as logs:
            await adapter.on_start("order", "saga-1")
            await adapter.on_step_completed("order", "saga-1", "payment")
            await adapter.on_completed("order", "saga-1", SagaStatus.COMPLETED)

        assert [(e["event"], e["log_level"]) for e in logs] == [
            ("saga_started", "info"),
            ("step_completed", "info"),
            ("saga_completed", "info"),
        ]
        assert logs[1]["step"] == "payment"
        assert logs[2]["status"] == "COMPLETED"

    async def test_failures_log_at_warning(self) -> None:
        adapter = LoggerEventsAdapter()

        with capture_logs() as logs:
            await adapter.on_step_failed("order", "saga-1", "payment", "declined")
            await adapter.on_compensated("order", "saga-1", "inventory", "db down")
            await adapter.on_compensated("order", "saga-1", "inventory", None)

        assert [(e["event"], e["log_level"]) for e in logs] == [
            ("step_failed", "warning"),
            ("compensation_failed", "warning"),
            ("step_compensated", "info"),
        ]
        assert logs[0]["reason"] == "declined"

    async def test_stuck_logs_critical(self) -> None:
        adapter = LoggerEventsAdapter()

        with capture_logs() as logs:
            await adapter.on_stuck("order", "saga-1", "inventory", "failed 5 times")

        assert logs[0]["event"] == "saga_stuck"
        assert logs[0]["log_level"] == "critical"
        assert logs[0]["correlation_id"] == "saga-1"


class TestCompositeEventsAdapter:
    async def test_broadcasts_to_every_adapter(self) -> None:
        first, second = AsyncMock(), AsyncMock()
        composite = CompositeEventsAdapter(first, second)

        await composite.on_step_failed("order", "saga-1", "payment", "declined")
        await composite.on_completed("order", "saga-1", SagaStatus.FAILED)

        for adapter in (first, second):
            adapter.on_step_failed.assert_awaited_once_with("order", "saga-1", "payment", "declined")
            adapter.on_completed.assert_awaited_once_with("order", "saga-1", SagaStatus.FAILED)

    async def test_failing_adapter_does_not_silence_others(self) -> None:
        broken, healthy = AsyncMock(), AsyncMock()
        broken.on_start.side_effect = RuntimeError("sink down")
        composite = CompositeEventsAdapter(broken, healthy)

        await composite.on_start("order", "saga-1")

        healthy.on_start.assert_awaited_once_with("order", "saga-1")

    def test_satisfies_port(self) -> None:
        assert isinstance(CompositeEventsAdapter(), SagaEventsPort)
