"""Saga instance state and message contracts."""

from sagaflow.saga.core.instance import SagaInstance, StepState
from sagaflow.saga.core.messages import (
    SAGA_ABORTED,
    SAGA_COMPLETED,
    SAGA_FAILED,
    Command,
    SagaOutcome,
    StepEvent,
)

__all__ = [
    "SAGA_ABORTED",
    "SAGA_COMPLETED",
    "SAGA_FAILED",
    "Command",
    "SagaInstance",
    "SagaOutcome",
    "StepEvent",
    "StepState",
]
