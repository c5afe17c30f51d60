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
"""Tests for SagaInstance — idempotency ledger, copies and serialisation."""

from __future__ import annotations

from datetime import UTC, datetime

from sagaflow.saga.core.instance import SagaInstance, StepState
from sagaflow.saga.types import DeliveryStatus, FailureReason, SagaStatus, StepStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _instance() -> SagaInstance:
    return SagaInstance(
        correlation_id="saga-1",
        saga_name="order",
        created_at=NOW,
        updated_at=NOW,
        steps={"a": StepState(name="a"), "b": StepState(name="b")},
        business_data={"orderId": "o-1", "lines": [1, 2]},
    )


class TestDeliveryLedger:
    def test_first_delivery_is_fresh(self) -> None:
        inst = _instance()

        assert inst.mark_delivery("a", "d-1") is DeliveryStatus.FRESH
        assert inst.delivery_seen("a", "d-1")

    def test_repeat_is_duplicate(self) -> None:
        inst = _instance()
        inst.mark_delivery("a", "d-1")

        assert inst.mark_delivery("a", "d-1") is DeliveryStatus.DUPLICATE
        assert inst.processed_deliveries == ["a:d-1"]

    def test_same_delivery_id_on_another_step_is_distinct(self) -> None:
        inst = _instance()
        inst.mark_delivery("a", "d-1")

        assert inst.mark_delivery("b", "d-1") is DeliveryStatus.FRESH

    def test_window_drops_oldest(self) -> None:
        inst = _instance()
        for i in range(5):
            inst.mark_delivery("a", f"d-{i}", window=3)

        assert inst.processed_deliveries == ["a:d-2", "a:d-3", "a:d-4"]
        assert not inst.delivery_seen("a", "d-0")


class TestStepState:
    def test_awaiting_compensation(self) -> None:
        state = StepState(name="a", status=StepStatus.COMPLETED)
        assert state.awaiting_compensation

        state.compensation_skipped = True
        assert not state.awaiting_compensation

    def test_attempts_in_budget_subtracts_base(self) -> None:
        state = StepState(name="a", compensation_attempts=7, compensation_attempt_base=5)
        assert state.attempts_in_budget == 2


class TestSagaInstance:
    def test_copy_is_deep(self) -> None:
        inst = _instance()
        clone = inst.copy()

        clone.step("a").status = StepStatus.IN_FLIGHT
        clone.business_data["lines"].append(3)

        assert inst.step("a").status is StepStatus.PENDING
        assert inst.business_data["lines"] == [1, 2]

    def test_steps_with_status(self) -> None:
        inst = _instance()
        inst.step("b").status = StepStatus.IN_FLIGHT

        assert [s.name for s in inst.steps_with_status(StepStatus.IN_FLIGHT)] == ["b"]

    def test_is_terminal_follows_status(self) -> None:
        inst = _instance()
        assert not inst.is_terminal
        inst.status = SagaStatus.ABORTED
        assert inst.is_terminal

    def test_dict_round_trip_keeps_everything(self) -> None:
        inst = _instance()
        inst.status = SagaStatus.COMPENSATING
        inst.version = 4
        inst.failure_reason = FailureReason.TIMEOUT
        inst.failure_detail = "timeout"
        inst.failed_step = "b"
        inst.compensation_phase = 0
        inst.stuck = True
        inst.mark_delivery("a", "d-1")
        a = inst.step("a")
        a.status = StepStatus.COMPLETED
        a.dispatched_at = NOW
        a.completed_at = NOW
        a.compensation_attempts = 6
        a.compensation_attempt_base = 5
        a.compensation_dispatched_at = NOW
        a.last_compensation_error = "db down"

        restored = SagaInstance.from_dict(inst.to_dict())

        assert restored == inst

    def test_from_dict_defaults_optional_fields(self) -> None:
        restored = SagaInstance.from_dict(
            {
                "correlation_id": "saga-1",
                "saga_name": "order",
                "status": "RUNNING",
                "created_at": NOW.isoformat(),
                "steps": {"a": {"name": "a", "status": "PENDING"}},
            }
        )

        assert restored.updated_at == NOW
        assert restored.version == 0
        assert restored.step("a").compensation_attempt_base == 0
        assert restored.processed_deliveries == []
