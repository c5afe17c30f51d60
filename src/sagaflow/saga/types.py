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
"""Shared enumerations for the saga orchestrator."""

from __future__ import annotations

from enum import StrEnum


class StepStatus(StrEnum):
    """Lifecycle status of a single saga step.

    Allowed moves: ``PENDING -> IN_FLIGHT -> COMPLETED | FAILED`` and
    ``COMPLETED -> COMPENSATED``.
    """

    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMPENSATED = "COMPENSATED"


_STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_FLIGHT}),
    StepStatus.IN_FLIGHT: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset({StepStatus.COMPENSATED}),
    StepStatus.FAILED: frozenset(),
    StepStatus.COMPENSATED: frozenset(),
}


def can_transition_step(current: StepStatus, target: StepStatus) -> bool:
    """Return ``True`` if a step may move from *current* to *target*."""
    return target in _STEP_TRANSITIONS[current]


class SagaStatus(StrEnum):
    """Overall state of a saga instance."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPENSATING = "COMPENSATING"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (SagaStatus.COMPLETED, SagaStatus.FAILED, SagaStatus.ABORTED)


_SAGA_TRANSITIONS: dict[SagaStatus, frozenset[SagaStatus]] = {
    SagaStatus.RUNNING: frozenset({SagaStatus.COMPLETED, SagaStatus.COMPENSATING}),
    SagaStatus.COMPENSATING: frozenset({SagaStatus.FAILED, SagaStatus.ABORTED}),
    SagaStatus.COMPLETED: frozenset(),
    SagaStatus.FAILED: frozenset(),
    SagaStatus.ABORTED: frozenset(),
}


def can_transition_saga(current: SagaStatus, target: SagaStatus) -> bool:
    """Return ``True`` if a saga may move from *current* to *target*."""
    return target in _SAGA_TRANSITIONS[current]


class Outcome(StrEnum):
    """Outcome reported by a participant for a command."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class EventKind(StrEnum):
    """Which command an inbound event answers."""

    FORWARD = "FORWARD"
    COMPENSATION = "COMPENSATION"


class FailureReason(StrEnum):
    """Why a saga left ``RUNNING`` for ``COMPENSATING``."""

    BUSINESS = "BUSINESS"
    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"


class ExecutionMode(StrEnum):
    """How the steps of a definition are partitioned into phases."""

    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"
    PHASED = "PHASED"


class Disposition(StrEnum):
    """Result of one engine evaluation pass."""

    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    NOT_FOUND = "NOT_FOUND"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


class DeliveryStatus(StrEnum):
    """Answer of the idempotency layer for a delivery id."""

    FRESH = "FRESH"
    DUPLICATE = "DUPLICATE"


class TimerKind(StrEnum):
    """Kinds of wake-ups the timeout scheduler can raise."""

    STEP_TIMEOUT = "STEP_TIMEOUT"
    COMPENSATION_TIMEOUT = "COMPENSATION_TIMEOUT"
    COMPENSATION_RETRY = "COMPENSATION_RETRY"
