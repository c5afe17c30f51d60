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
"""Step definition — immutable description of a single saga step."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StepDefinition:
    """Immutable descriptor for one saga step.

    A step is pure data: the engine never calls into the participant, it
    only sends ``forward_command`` (and, on rollback, ``compensating_command``)
    to :attr:`channel` and waits for the matching outcome events.

    Attributes:
        name: Unique step name within the saga.
        forward_command: Command type sent to run the local transaction.
        success_event: Event type the participant emits on success.
        failure_event: Event type the participant emits on failure.
        compensating_command: Command type that undoes the step, or ``None``
            when compensation is skipped by policy for this step.
        group: Zero-based phase index. Steps sharing a group run in parallel.
        channel: Participant channel the commands are sent to.
        timeout_ms: Deadline after dispatch (``0`` uses the engine default).
        required_fields: Keys that must be present in the business data when
            the step is dispatched.
        depends_on: Step names that must complete first (phased mode only).
        compensated_event: Event type emitted when the compensation succeeds.
        compensation_failed_event: Event type emitted when it fails.
    """

    name: str
    forward_command: str
    success_event: str = ""
    failure_event: str = ""
    compensating_command: str | None = None
    group: int = 0
    channel: str = ""
    timeout_ms: int = 0
    required_fields: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    compensated_event: str = ""
    compensation_failed_event: str = ""

    def __post_init__(self) -> None:
        # Frozen dataclass: derived defaults go through object.__setattr__.
        if not self.success_event:
            object.__setattr__(self, "success_event", f"{self.forward_command}Succeeded")
        if not self.failure_event:
            object.__setattr__(self, "failure_event", f"{self.forward_command}Failed")
        if not self.channel:
            object.__setattr__(self, "channel", self.name)
        if self.compensating_command is not None:
            if not self.compensated_event:
                object.__setattr__(self, "compensated_event", f"{self.compensating_command}Succeeded")
            if not self.compensation_failed_event:
                object.__setattr__(self, "compensation_failed_event", f"{self.compensating_command}Failed")

    @property
    def compensable(self) -> bool:
        return self.compensating_command is not None
