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
"""Saga instance state — the mutable, versioned entity the engine persists.

Every evaluation pass works on a private :meth:`SagaInstance.copy` of the
loaded instance; nothing here is shared between workers.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sagaflow.saga.types import DeliveryStatus, FailureReason, SagaStatus, StepStatus


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StepState:
    """Persisted progress of one step.

    Fields
    ------
    name:
        Step name from the saga definition.
    status:
        Current :class:`StepStatus`.
    dispatched_at:
        UTC time the forward command was (last) dispatched.
    completed_at:
        UTC time the step reached ``COMPLETED`` or ``FAILED``.
    reason:
        Failure reason reported by the participant (or ``"timeout"``).
    compensation_attempts:
        Number of times the compensating command has been dispatched.
    compensation_attempt_base:
        Value of ``compensation_attempts`` when an operator last granted a
        fresh attempt budget.
    compensation_in_flight:
        ``True`` while a compensating command awaits its outcome.
    compensation_dispatched_at:
        UTC time of the latest compensation dispatch.
    compensation_skipped:
        ``True`` when compensation was skipped by policy (no compensating
        command, or an operator decision).
    last_compensation_error:
        Reason given by the latest failed compensation.
    """

    name: str
    status: StepStatus = StepStatus.PENDING
    dispatched_at: datetime | None = None
    completed_at: datetime | None = None
    reason: str | None = None
    compensation_attempts: int = 0
    compensation_attempt_base: int = 0
    compensation_in_flight: bool = False
    compensation_dispatched_at: datetime | None = None
    compensation_skipped: bool = False
    last_compensation_error: str | None = None

    @property
    def awaiting_compensation(self) -> bool:
        """``True`` for a completed step whose undo has neither finished nor been skipped."""
        return self.status is StepStatus.COMPLETED and not self.compensation_skipped

    @property
    def attempts_in_budget(self) -> int:
        """Compensation dispatches counted against the current attempt budget."""
        return self.compensation_attempts - self.compensation_attempt_base

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "dispatched_at": _iso(self.dispatched_at),
            "completed_at": _iso(self.completed_at),
            "reason": self.reason,
            "compensation_attempts": self.compensation_attempts,
            "compensation_attempt_base": self.compensation_attempt_base,
            "compensation_in_flight": self.compensation_in_flight,
            "compensation_dispatched_at": _iso(self.compensation_dispatched_at),
            "compensation_skipped": self.compensation_skipped,
            "last_compensation_error": self.last_compensation_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepState:
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            dispatched_at=_parse(data.get("dispatched_at")),
            completed_at=_parse(data.get("completed_at")),
            reason=data.get("reason"),
            compensation_attempts=data.get("compensation_attempts", 0),
            compensation_attempt_base=data.get("compensation_attempt_base", 0),
            compensation_in_flight=data.get("compensation_in_flight", False),
            compensation_dispatched_at=_parse(data.get("compensation_dispatched_at")),
            compensation_skipped=data.get("compensation_skipped", False),
            last_compensation_error=data.get("last_compensation_error"),
        )


@dataclass
class SagaInstance:
    """One running (or finished) saga, keyed by its correlation id.

    ``version`` is owned by the state store: it is ``0`` on creation and
    the store bumps it by exactly one on every successful compare-and-swap.
    ``processed_deliveries`` is the idempotency ledger; it travels inside
    the instance so marking a delivery commits atomically with the state
    change it caused.
    """

    correlation_id: str
    saga_name: str
    created_at: datetime
    updated_at: datetime
    status: SagaStatus = SagaStatus.RUNNING
    current_phase: int = 0
    steps: dict[str, StepState] = field(default_factory=dict)
    business_data: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    completed_at: datetime | None = None
    failure_reason: FailureReason | None = None
    failure_detail: str | None = None
    failed_step: str | None = None
    compensation_phase: int | None = None
    stuck: bool = False
    processed_deliveries: list[str] = field(default_factory=list)

    # ── idempotency ledger ────────────────────────────────────

    def mark_delivery(self, step_name: str, delivery_id: str, window: int = 256) -> DeliveryStatus:
        """Record *delivery_id* for *step_name* unless it was already seen.

        Only the most recent *window* ids are retained.
        """
        key = f"{step_name}:{delivery_id}"
        if key in self.processed_deliveries:
            return DeliveryStatus.DUPLICATE
        self.processed_deliveries.append(key)
        if len(self.processed_deliveries) > window:
            del self.processed_deliveries[: len(self.processed_deliveries) - window]
        return DeliveryStatus.FRESH

    def delivery_seen(self, step_name: str, delivery_id: str) -> bool:
        return f"{step_name}:{delivery_id}" in self.processed_deliveries

    # ── queries ───────────────────────────────────────────────

    def step(self, step_name: str) -> StepState:
        return self.steps[step_name]

    def steps_with_status(self, status: StepStatus) -> list[StepState]:
        return [s for s in self.steps.values() if s.status is status]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> SagaInstance:
        """Deep copy for a private evaluation pass."""
        return copy.deepcopy(self)

    # ── serialisation ─────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict for persistence."""
        return {
            "correlation_id": self.correlation_id,
            "saga_name": self.saga_name,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "steps": {name: s.to_dict() for name, s in self.steps.items()},
            "business_data": copy.deepcopy(self.business_data),
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_detail": self.failure_detail,
            "failed_step": self.failed_step,
            "compensation_phase": self.compensation_phase,
            "stuck": self.stuck,
            "processed_deliveries": list(self.processed_deliveries),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SagaInstance:
        """Reconstruct from a persistence dict, defaulting optional fields."""
        reason = data.get("failure_reason")
        return cls(
            correlation_id=data["correlation_id"],
            saga_name=data["saga_name"],
            status=SagaStatus(data["status"]),
            current_phase=data.get("current_phase", 0),
            steps={name: StepState.from_dict(s) for name, s in data.get("steps", {}).items()},
            business_data=dict(data.get("business_data") or {}),
            version=data.get("version", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
            completed_at=_parse(data.get("completed_at")),
            failure_reason=FailureReason(reason) if reason else None,
            failure_detail=data.get("failure_detail"),
            failed_step=data.get("failed_step"),
            compensation_phase=data.get("compensation_phase"),
            stuck=data.get("stuck", False),
            processed_deliveries=list(data.get("processed_deliveries") or []),
        )
