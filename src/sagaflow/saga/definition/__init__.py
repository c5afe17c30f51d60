"""Saga definitions: steps, phases, builder and registry."""

from sagaflow.saga.definition.saga_builder import SagaBuilder, StepBuilder
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.definition.saga_registry import SagaRegistry
from sagaflow.saga.definition.step_definition import StepDefinition
from sagaflow.saga.definition.topology import SagaTopology

__all__ = [
    "SagaBuilder",
    "SagaDefinition",
    "SagaRegistry",
    "SagaTopology",
    "StepBuilder",
    "StepDefinition",
]
