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
"""Saga builder — fluent DSL for programmatic saga definitions.

Provides :class:`SagaBuilder` and :class:`StepBuilder` for constructing
immutable :class:`SagaDefinition` objects.

Example::

    order_saga = (
        SagaBuilder("order-saga")
        .step("inventory").command("ReserveInventory").compensate("ReleaseInventory")
            .group(0).requires("orderId").add()
        .step("payment").command("ProcessPayment").compensate("RefundPayment")
            .group(0).add()
        .step("shipping").command("ShipOrder").group(1).timeout_ms(60_000).add()
        .build()
    )
"""

from __future__ import annotations

from sagaflow.kernel.exceptions import SagaDefinitionException
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.definition.step_definition import StepDefinition
from sagaflow.saga.types import ExecutionMode


class StepBuilder:
    """Builder for individual step configuration.

    Call :meth:`add` to finalise the step and return the parent
    :class:`SagaBuilder` for continued chaining.
    """

    def __init__(self, name: str, parent: SagaBuilder) -> None:
        self._name = name
        self._parent = parent
        self._forward_command: str | None = None
        self._compensating_command: str | None = None
        self._success_event = ""
        self._failure_event = ""
        self._compensated_event = ""
        self._compensation_failed_event = ""
        self._group = 0
        self._channel = ""
        self._timeout_ms = 0
        self._required_fields: list[str] = []
        self._depends_on: list[str] = []

    # ── Fluent setters ────────────────────────────────────────

    def command(self, command_type: str) -> StepBuilder:
        """Set the forward command sent to the participant."""
        self._forward_command = command_type
        return self

    def compensate(self, command_type: str) -> StepBuilder:
        """Set the compensating command that undoes this step."""
        self._compensating_command = command_type
        return self

    def on_success(self, event_type: str) -> StepBuilder:
        self._success_event = event_type
        return self

    def on_failure(self, event_type: str) -> StepBuilder:
        self._failure_event = event_type
        return self

    def on_compensated(self, event_type: str, failed_event_type: str = "") -> StepBuilder:
        """Override the event names the compensating command answers with."""
        self._compensated_event = event_type
        self._compensation_failed_event = failed_event_type
        return self

    def group(self, index: int) -> StepBuilder:
        """Place the step in phase *index* (phased mode)."""
        self._group = index
        return self

    def depends_on(self, *step_names: str) -> StepBuilder:
        """Declare steps that must complete first; phases are derived from these."""
        self._depends_on.extend(step_names)
        return self

    def channel(self, name: str) -> StepBuilder:
        """Route commands to participant channel *name* (defaults to the step name)."""
        self._channel = name
        return self

    def timeout_ms(self, ms: int) -> StepBuilder:
        self._timeout_ms = ms
        return self

    def requires(self, *fields: str) -> StepBuilder:
        """Declare business-data keys that must exist when the step is dispatched."""
        self._required_fields.extend(fields)
        return self

    # ── Finalisation ──────────────────────────────────────────

    def add(self) -> SagaBuilder:
        """Finalise this step and return the parent builder for chaining."""
        self._parent._add_step(self)  # noqa: SLF001
        return self._parent

    def _build_definition(self) -> StepDefinition:
        if self._forward_command is None:
            raise SagaDefinitionException(
                f"Step '{self._name}' in saga '{self._parent.name}' must have a forward command",
                code="INCOMPLETE_STEP",
            )
        return StepDefinition(
            name=self._name,
            forward_command=self._forward_command,
            success_event=self._success_event,
            failure_event=self._failure_event,
            compensating_command=self._compensating_command,
            group=self._group,
            channel=self._channel,
            timeout_ms=self._timeout_ms,
            required_fields=tuple(self._required_fields),
            depends_on=tuple(self._depends_on),
            compensated_event=self._compensated_event,
            compensation_failed_event=self._compensation_failed_event,
        )


class SagaBuilder:
    """Fluent builder for programmatic saga definitions.

    Use :meth:`step` to begin configuring a step, chain configuration
    methods, call ``.add()`` to finalise, and repeat.  Call :meth:`build`
    to validate and produce the :class:`SagaDefinition`.
    """

    def __init__(self, name: str, mode: ExecutionMode = ExecutionMode.PHASED) -> None:
        self.name = name
        self._mode = mode
        self._step_builders: list[StepBuilder] = []
        self._step_names: set[str] = set()

    def step(self, name: str) -> StepBuilder:
        """Begin configuring a new step called *name*."""
        return StepBuilder(name, self)

    def execution_mode(self, mode: ExecutionMode) -> SagaBuilder:
        self._mode = mode
        return self

    def sequential(self) -> SagaBuilder:
        return self.execution_mode(ExecutionMode.SEQUENTIAL)

    def parallel(self) -> SagaBuilder:
        return self.execution_mode(ExecutionMode.PARALLEL)

    def build(self) -> SagaDefinition:
        """Validate and produce the final :class:`SagaDefinition`.

        Raises:
            SagaDefinitionException: If the saga has no steps, a step lacks a
                forward command, or the phase layout is invalid.
        """
        return SagaDefinition.of(
            self.name,
            [sb._build_definition() for sb in self._step_builders],  # noqa: SLF001
            self._mode,
        )

    def _add_step(self, step_builder: StepBuilder) -> None:
        name = step_builder._name  # noqa: SLF001
        if name in self._step_names:
            raise SagaDefinitionException(
                f"Step '{name}' already exists in saga '{self.name}'", code="DUPLICATE_STEP"
            )
        self._step_names.add(name)
        self._step_builders.append(step_builder)
