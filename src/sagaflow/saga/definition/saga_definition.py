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
"""Saga definition — immutable, phase-indexed arena of step definitions."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sagaflow.kernel.exceptions import SagaDefinitionException
from sagaflow.saga.definition.step_definition import StepDefinition
from sagaflow.saga.definition.topology import SagaTopology
from sagaflow.saga.types import EventKind, ExecutionMode, Outcome


@dataclass(frozen=True)
class SagaDefinition:
    """Immutable description of a saga: its steps and the phases linking them.

    Build instances with :meth:`of`, :meth:`from_dict` or
    :class:`~sagaflow.saga.definition.saga_builder.SagaBuilder`; those
    normalise every step's ``group`` for the chosen execution mode and
    validate the result.  A definition is shared read-only by every engine
    worker.

    Attributes:
        name: Unique saga name.
        steps: Step definitions in declaration order.
        phases: Step names per phase; phase ``i`` runs after phase ``i - 1``
            has fully completed.
    """

    name: str
    steps: tuple[StepDefinition, ...]
    phases: tuple[tuple[str, ...], ...]
    _index: dict[str, StepDefinition] = field(init=False, repr=False, compare=False)
    _events: dict[str, tuple[str, EventKind, Outcome]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index = {s.name: s for s in self.steps}
        events: dict[str, tuple[str, EventKind, Outcome]] = {}
        for s in self.steps:
            events[s.success_event] = (s.name, EventKind.FORWARD, Outcome.SUCCESS)
            events[s.failure_event] = (s.name, EventKind.FORWARD, Outcome.FAILURE)
            if s.compensable:
                events[s.compensated_event] = (s.name, EventKind.COMPENSATION, Outcome.SUCCESS)
                events[s.compensation_failed_event] = (s.name, EventKind.COMPENSATION, Outcome.FAILURE)
        object.__setattr__(self, "_index", index)
        object.__setattr__(self, "_events", events)

    # ── construction ──────────────────────────────────────────

    @classmethod
    def of(
        cls,
        name: str,
        steps: Iterable[StepDefinition],
        mode: ExecutionMode = ExecutionMode.PHASED,
    ) -> SagaDefinition:
        """Normalise step groups for *mode* and build a validated definition.

        * ``SEQUENTIAL`` — one phase per step, in declaration order.
        * ``PARALLEL`` — a single phase holding every step.
        * ``PHASED`` — explicit ``group`` indices, or phases derived from
          ``depends_on`` when any step declares dependencies.

        Raises:
            SagaDefinitionException: If the definition is empty, has duplicate
                step names, non-contiguous groups, mixes explicit groups with
                dependencies, or has unknown/cyclic dependencies.
        """
        steps = list(steps)
        if not steps:
            raise SagaDefinitionException(f"Saga '{name}' must have at least one step", code="EMPTY_SAGA")

        seen: set[str] = set()
        for s in steps:
            if s.name in seen:
                raise SagaDefinitionException(
                    f"Step '{s.name}' is defined twice in saga '{name}'", code="DUPLICATE_STEP"
                )
            seen.add(s.name)

        if mode is ExecutionMode.SEQUENTIAL:
            steps = [dataclasses.replace(s, group=i) for i, s in enumerate(steps)]
        elif mode is ExecutionMode.PARALLEL:
            steps = [dataclasses.replace(s, group=0) for s in steps]
        elif any(s.depends_on for s in steps):
            if any(s.group != 0 for s in steps):
                raise SagaDefinitionException(
                    f"Saga '{name}' mixes explicit groups with depends_on", code="MIXED_PHASING"
                )
            layers = SagaTopology.compute_layers({s.name: list(s.depends_on) for s in steps})
            group_of = {step_name: i for i, layer in enumerate(layers) for step_name in layer}
            steps = [dataclasses.replace(s, group=group_of[s.name]) for s in steps]

        groups = sorted({s.group for s in steps})
        if groups != list(range(len(groups))):
            raise SagaDefinitionException(
                f"Saga '{name}' has non-contiguous groups {groups}; groups must run 0..n-1",
                code="BAD_GROUPS",
            )

        phases = tuple(tuple(s.name for s in steps if s.group == g) for g in groups)
        return cls(name=name, steps=tuple(steps), phases=phases)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SagaDefinition:
        """Build a definition from configuration data.

        Keys may be ``snake_case`` or ``kebab-case``::

            name: order-saga
            mode: PHASED
            steps:
              - name: inventory
                forward-command: ReserveInventory
                compensating-command: ReleaseInventory
                group: 0
                timeout-ms: 30000
                required-fields: [orderId]
        """
        norm = _normalise_keys(data)
        if "name" not in norm:
            raise SagaDefinitionException("Saga definition is missing 'name'", code="MISSING_NAME")
        mode = ExecutionMode(str(norm.get("mode", ExecutionMode.PHASED)).upper())
        field_names = {f.name for f in dataclasses.fields(StepDefinition)}

        steps: list[StepDefinition] = []
        for raw in norm.get("steps") or []:
            step_data = _normalise_keys(raw)
            unknown = set(step_data) - field_names
            if unknown:
                raise SagaDefinitionException(
                    f"Unknown step attributes {sorted(unknown)} in saga '{norm['name']}'",
                    code="UNKNOWN_ATTRIBUTE",
                )
            if "name" not in step_data or "forward_command" not in step_data:
                raise SagaDefinitionException(
                    f"Every step of saga '{norm['name']}' needs 'name' and 'forward_command'",
                    code="INCOMPLETE_STEP",
                )
            for key in ("required_fields", "depends_on"):
                if key in step_data:
                    step_data[key] = tuple(step_data[key])
            steps.append(StepDefinition(**step_data))

        return cls.of(str(norm["name"]), steps, mode)

    # ── queries ───────────────────────────────────────────────

    @property
    def phase_count(self) -> int:
        return len(self.phases)

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.steps)

    def has_step(self, step_name: str) -> bool:
        return step_name in self._index

    def step(self, step_name: str) -> StepDefinition:
        """Return the step called *step_name*.

        Raises:
            KeyError: If the saga has no such step.
        """
        return self._index[step_name]

    def phase_of(self, step_name: str) -> int:
        return self._index[step_name].group

    def steps_in_phase(self, phase: int) -> tuple[StepDefinition, ...]:
        return tuple(self._index[n] for n in self.phases[phase])

    def required_fields(self, phase: int) -> tuple[str, ...]:
        """Union of ``required_fields`` over the steps of *phase*, in order."""
        fields: list[str] = []
        for s in self.steps_in_phase(phase):
            fields.extend(f for f in s.required_fields if f not in fields)
        return tuple(fields)

    def classify(self, step_name: str, event_type: str) -> tuple[EventKind, Outcome] | None:
        """Map an event type to ``(kind, outcome)`` for *step_name*, if it belongs to it."""
        entry = self._events.get(event_type)
        if entry is None or entry[0] != step_name:
            return None
        return entry[1], entry[2]


def _normalise_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).replace("-", "_"): v for k, v in data.items()}
