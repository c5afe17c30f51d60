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
"""Message contracts exchanged with participants, transport-agnostic."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sagaflow.saga.types import EventKind, Outcome


def forward_delivery_id(correlation_id: str, step_name: str) -> str:
    return f"{correlation_id}/{step_name}/forward"


def compensation_delivery_id(correlation_id: str, step_name: str, attempt: int) -> str:
    return f"{correlation_id}/{step_name}/compensate/{attempt}"


def compensation_attempt(delivery_id: str | None) -> int | None:
    """Attempt number encoded in a compensation delivery id, if any."""
    if not delivery_id:
        return None
    head, sep, tail = delivery_id.rpartition("/compensate/")
    if not sep or not head or not tail.isdigit():
        return None
    return int(tail)


def idempotency_key(correlation_id: str, step_name: str, kind: EventKind) -> str:
    suffix = "forward" if kind is EventKind.FORWARD else "compensate"
    return f"{correlation_id}/{step_name}/{suffix}"


@dataclass(frozen=True)
class Command:
    """A command for one participant.

    ``delivery_id`` identifies this particular send (re-sends of the same
    attempt reuse it); ``idempotency_key`` stays stable across every attempt
    so the participant never applies the same step twice.
    """

    correlation_id: str
    saga_name: str
    step_name: str
    command_type: str
    channel: str
    kind: EventKind
    delivery_id: str
    idempotency_key: str
    attempt: int = 1
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepEvent:
    """An outcome event emitted by a participant.

    Either ``outcome`` (with ``kind``) or ``event_type`` must identify what
    happened; ``event_type`` is resolved against the saga definition.
    """

    correlation_id: str
    step_name: str
    delivery_id: str
    outcome: Outcome | None = None
    kind: EventKind | None = None
    event_type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


SAGA_COMPLETED = "SagaCompleted"
SAGA_FAILED = "SagaFailed"
SAGA_ABORTED = "SagaAborted"


@dataclass(frozen=True)
class SagaOutcome:
    """Final outcome published once a saga reaches a terminal state."""

    type: str
    correlation_id: str
    saga_name: str
    reason: str | None = None
