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
"""Saga orchestration — definitions, persistent instances, the engine and its infrastructure.

Quick start::

    from sagaflow.saga import SagaBuilder, SagaOrchestrator

    order = (
        SagaBuilder("order")
        .step("reserve").command("ReserveStock").compensate("ReleaseStock").add()
        .step("charge").command("ChargeCard").compensate("RefundCard").add()
        .sequential()
        .build()
    )
"""

from sagaflow.saga.application import SagaOrchestrator
from sagaflow.saga.channel import SagaEventListener, SagaMessageChannel
from sagaflow.saga.core import Command, SagaInstance, SagaOutcome, StepEvent, StepState
from sagaflow.saga.definition import SagaBuilder, SagaDefinition, SagaRegistry, StepDefinition
from sagaflow.saga.engine import EvaluationResult, SagaEngine, TimerRequest
from sagaflow.saga.idempotency import IdempotencyCache
from sagaflow.saga.observability import CompositeEventsAdapter, LoggerEventsAdapter, SagaEventsPort
from sagaflow.saga.persistence import InMemorySagaStateStore, SagaStatePort, SqlAlchemySagaStateStore
from sagaflow.saga.recovery import SagaReconciler
from sagaflow.saga.scheduling import TimeoutScheduler
from sagaflow.saga.types import (
    Disposition,
    EventKind,
    ExecutionMode,
    FailureReason,
    Outcome,
    SagaStatus,
    StepStatus,
    TimerKind,
)

__all__ = [
    "Command",
    "CompositeEventsAdapter",
    "Disposition",
    "EvaluationResult",
    "EventKind",
    "ExecutionMode",
    "FailureReason",
    "IdempotencyCache",
    "InMemorySagaStateStore",
    "LoggerEventsAdapter",
    "Outcome",
    "SagaBuilder",
    "SagaDefinition",
    "SagaEngine",
    "SagaEventListener",
    "SagaEventsPort",
    "SagaInstance",
    "SagaMessageChannel",
    "SagaOrchestrator",
    "SagaOutcome",
    "SagaReconciler",
    "SagaRegistry",
    "SagaStatePort",
    "SagaStatus",
    "SqlAlchemySagaStateStore",
    "StepDefinition",
    "StepEvent",
    "StepState",
    "StepStatus",
    "TimeoutScheduler",
    "TimerKind",
    "TimerRequest",
]
