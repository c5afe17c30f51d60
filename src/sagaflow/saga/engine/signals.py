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
"""Signals — the inputs of the pure saga transition function.

Each inbound message or wake-up is turned into exactly one signal and
interpreted by :func:`sagaflow.saga.engine.transition.evaluate`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sagaflow.saga.types import Outcome, TimerKind


@dataclass(frozen=True)
class StepOutcomeSignal:
    """A participant answered a forward command."""

    step_name: str
    outcome: Outcome
    delivery_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


@dataclass(frozen=True)
class StepTimeoutSignal:
    """The deadline of an in-flight step elapsed."""

    step_name: str


@dataclass(frozen=True)
class CompensationOutcomeSignal:
    """A participant answered a compensating command.

    ``attempt`` is the dispatch the answer belongs to; ``None`` means the
    latest one.
    """

    step_name: str
    outcome: Outcome
    delivery_id: str | None = None
    reason: str | None = None
    attempt: int | None = None


@dataclass(frozen=True)
class CompensationTimeoutSignal:
    """A compensating command (attempt ``attempt``) got no answer in time."""

    step_name: str
    attempt: int


@dataclass(frozen=True)
class CompensationRetrySignal:
    """Re-dispatch a failed compensation.

    Scheduled retries carry the attempt they follow up on; an operator
    retry sets ``force`` to reset the attempt budget and clear ``stuck``.
    """

    step_name: str
    attempt: int = 0
    force: bool = False


@dataclass(frozen=True)
class SkipCompensationSignal:
    """Operator decision: treat a step's compensation as skipped by policy."""

    step_name: str


@dataclass(frozen=True)
class AbortSignal:
    """External cancellation: inject a failure for every in-flight step."""

    reason: str | None = None


Signal = (
    StepOutcomeSignal
    | StepTimeoutSignal
    | CompensationOutcomeSignal
    | CompensationTimeoutSignal
    | CompensationRetrySignal
    | SkipCompensationSignal
    | AbortSignal
)


@dataclass(frozen=True)
class TimerRequest:
    """A wake-up the scheduler must deliver back to the engine at ``due_at``."""

    kind: TimerKind
    correlation_id: str
    step_name: str
    due_at: datetime
    attempt: int = 0

    @property
    def key(self) -> tuple[str, str, TimerKind]:
        return (self.correlation_id, self.step_name, self.kind)

    def to_signal(self) -> Signal:
        if self.kind is TimerKind.STEP_TIMEOUT:
            return StepTimeoutSignal(self.step_name)
        if self.kind is TimerKind.COMPENSATION_TIMEOUT:
            return CompensationTimeoutSignal(self.step_name, self.attempt)
        return CompensationRetrySignal(self.step_name, self.attempt)


@dataclass(frozen=True)
class LifecycleNote:
    """Something observable happened during a pass (fed to the events port)."""

    event: str
    step_name: str | None = None
    detail: str | None = None
