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
"""Pure saga transition function.

``(definition, instance, signal, now) -> Transition``: the new private copy
of the instance plus the commands, final outcomes, timers and lifecycle
notes the engine must act on *after* the new state is durably written.
Nothing in this module performs I/O, reads the clock or generates ids.

Compensation unwinds phases in strict reverse order.  ``compensation_phase``
is the phase currently being unwound; it only moves down once that phase
has no in-flight step and no completed step still awaiting its undo.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sagaflow.kernel.exceptions import IllegalTransitionException
from sagaflow.saga.config.properties import SagaEngineProperties
from sagaflow.saga.core.instance import SagaInstance, StepState
from sagaflow.saga.core.messages import (
    SAGA_ABORTED,
    SAGA_COMPLETED,
    SAGA_FAILED,
    Command,
    SagaOutcome,
    compensation_attempt,
    compensation_delivery_id,
    forward_delivery_id,
    idempotency_key,
)
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.engine.signals import (
    AbortSignal,
    CompensationOutcomeSignal,
    CompensationRetrySignal,
    CompensationTimeoutSignal,
    LifecycleNote,
    Signal,
    SkipCompensationSignal,
    StepOutcomeSignal,
    StepTimeoutSignal,
    TimerRequest,
)
from sagaflow.saga.types import (
    DeliveryStatus,
    EventKind,
    FailureReason,
    Outcome,
    SagaStatus,
    StepStatus,
    TimerKind,
    can_transition_saga,
    can_transition_step,
)

TIMEOUT_REASON = "timeout"
ABORT_REASON = "aborted"


@dataclass(frozen=True)
class TransitionPolicy:
    """Engine settings the transition function depends on."""

    default_step_timeout_ms: int = 300_000
    compensation_max_attempts: int = 5
    compensation_backoff_ms: int = 1000
    compensation_timeout_ms: int = 60_000
    dedup_window: int = 256

    @classmethod
    def from_properties(cls, props: SagaEngineProperties) -> TransitionPolicy:
        return cls(
            default_step_timeout_ms=props.default_step_timeout_ms,
            compensation_max_attempts=max(props.compensation_max_attempts, 1),
            compensation_backoff_ms=props.compensation_backoff_ms,
            compensation_timeout_ms=props.compensation_timeout_ms,
            dedup_window=props.dedup_window,
        )

    def step_timeout_ms(self, definition: SagaDefinition, step_name: str) -> int:
        return definition.step(step_name).timeout_ms or self.default_step_timeout_ms

    def retry_delay_ms(self, attempts: int) -> int:
        """Exponential backoff after the *attempts*-th failed compensation."""
        return self.compensation_backoff_ms * (2 ** max(attempts - 1, 0))


@dataclass
class Transition:
    """Result of one evaluation.

    ``instance`` is ``None`` when the signal was discarded (see
    ``ignored``/``duplicate``); otherwise it must be persisted before any
    of the side effects are carried out.
    """

    instance: SagaInstance | None = None
    commands: list[Command] = field(default_factory=list)
    outcomes: list[SagaOutcome] = field(default_factory=list)
    timers: list[TimerRequest] = field(default_factory=list)
    notes: list[LifecycleNote] = field(default_factory=list)
    settled_steps: list[str] = field(default_factory=list)
    ignored: str | None = None
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return self.instance is not None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def start(
    definition: SagaDefinition,
    correlation_id: str,
    payload: dict[str, Any],
    now: datetime,
    policy: TransitionPolicy,
) -> Transition:
    """Build the version-0 instance with phase 0 already dispatched."""
    instance = SagaInstance(
        correlation_id=correlation_id,
        saga_name=definition.name,
        created_at=now,
        updated_at=now,
        steps={name: StepState(name=name) for name in definition.step_names},
        business_data=copy.deepcopy(payload),
    )
    p = _Pass(definition, instance, now, policy)
    p.notes.append(LifecycleNote("started"))
    p.dispatch_phase(0)
    return p.result()


def evaluate(
    definition: SagaDefinition,
    instance: SagaInstance,
    signal: Signal,
    now: datetime,
    policy: TransitionPolicy,
) -> Transition:
    """Interpret *signal* against a private copy of *instance*.

    Raises:
        IllegalTransitionException: If applying the signal would break the
            step or saga state machine (the caller treats it as a protocol
            violation).
    """
    if instance.is_terminal:
        delivery_id = getattr(signal, "delivery_id", None)
        step_name = getattr(signal, "step_name", "")
        if delivery_id is not None and instance.delivery_seen(step_name, delivery_id):
            return Transition(duplicate=True, ignored="duplicate delivery")
        return Transition(ignored=f"saga is {instance.status}")
    p = _Pass(definition, instance.copy(), now, policy)
    handler = _HANDLERS[type(signal)]
    return handler(p, signal)


def build_command(
    definition: SagaDefinition,
    instance: SagaInstance,
    step_name: str,
    kind: EventKind,
) -> Command:
    """Rebuild the command last dispatched for *step_name* (same delivery id)."""
    step_def = definition.step(step_name)
    state = instance.step(step_name)
    if kind is EventKind.FORWARD:
        return Command(
            correlation_id=instance.correlation_id,
            saga_name=instance.saga_name,
            step_name=step_name,
            command_type=step_def.forward_command,
            channel=step_def.channel,
            kind=kind,
            delivery_id=forward_delivery_id(instance.correlation_id, step_name),
            idempotency_key=idempotency_key(instance.correlation_id, step_name, kind),
            payload=copy.deepcopy(instance.business_data),
        )
    if step_def.compensating_command is None:
        raise IllegalTransitionException(
            f"Step '{step_name}' of saga '{instance.saga_name}' has no compensating command",
            code="NOT_COMPENSABLE",
        )
    attempt = max(state.compensation_attempts, 1)
    return Command(
        correlation_id=instance.correlation_id,
        saga_name=instance.saga_name,
        step_name=step_name,
        command_type=step_def.compensating_command,
        channel=step_def.channel,
        kind=kind,
        delivery_id=compensation_delivery_id(instance.correlation_id, step_name, attempt),
        idempotency_key=idempotency_key(instance.correlation_id, step_name, kind),
        attempt=attempt,
        payload=copy.deepcopy(instance.business_data),
    )


def pending_timers(
    definition: SagaDefinition,
    instance: SagaInstance,
    now: datetime,
    policy: TransitionPolicy,
) -> list[TimerRequest]:
    """Every timer implied by persisted state, for rehydration after a restart.

    A pending retry is due one backoff interval after the failed attempt was
    dispatched, the closest bound the persisted state allows.
    """
    if instance.is_terminal:
        return []
    timers: list[TimerRequest] = []
    cid = instance.correlation_id
    for state in instance.steps.values():
        if state.status is StepStatus.IN_FLIGHT and state.dispatched_at is not None:
            timeout_ms = policy.step_timeout_ms(definition, state.name)
            if timeout_ms > 0:
                timers.append(
                    TimerRequest(
                        TimerKind.STEP_TIMEOUT,
                        cid,
                        state.name,
                        state.dispatched_at + timedelta(milliseconds=timeout_ms),
                    )
                )
        elif state.awaiting_compensation and instance.status is SagaStatus.COMPENSATING:
            if state.compensation_in_flight and state.compensation_dispatched_at is not None:
                if policy.compensation_timeout_ms > 0:
                    timers.append(
                        TimerRequest(
                            TimerKind.COMPENSATION_TIMEOUT,
                            cid,
                            state.name,
                            state.compensation_dispatched_at
                            + timedelta(milliseconds=policy.compensation_timeout_ms),
                            attempt=state.compensation_attempts,
                        )
                    )
            elif state.compensation_attempts > 0 and state.attempts_in_budget < policy.compensation_max_attempts:
                failed_after = state.compensation_dispatched_at or now
                timers.append(
                    TimerRequest(
                        TimerKind.COMPENSATION_RETRY,
                        cid,
                        state.name,
                        failed_after + timedelta(milliseconds=policy.retry_delay_ms(state.attempts_in_budget)),
                        attempt=state.compensation_attempts,
                    )
                )
    return timers


def inflight_commands(
    definition: SagaDefinition,
    instance: SagaInstance,
    older_than: datetime,
) -> list[Command]:
    """Commands still awaiting an answer that were dispatched before *older_than*."""
    if instance.is_terminal:
        return []
    commands: list[Command] = []
    for state in instance.steps.values():
        if state.status is StepStatus.IN_FLIGHT:
            if state.dispatched_at is not None and state.dispatched_at < older_than:
                commands.append(build_command(definition, instance, state.name, EventKind.FORWARD))
        elif state.compensation_in_flight and state.awaiting_compensation:
            sent = state.compensation_dispatched_at
            if sent is not None and sent < older_than:
                commands.append(build_command(definition, instance, state.name, EventKind.COMPENSATION))
    return commands


# ---------------------------------------------------------------------------
# Evaluation pass
# ---------------------------------------------------------------------------


class _Pass:
    """Mutable scratchpad for one evaluation over a private instance copy."""

    def __init__(
        self,
        definition: SagaDefinition,
        instance: SagaInstance,
        now: datetime,
        policy: TransitionPolicy,
    ) -> None:
        self.definition = definition
        self.instance = instance
        self.now = now
        self.policy = policy
        self.commands: list[Command] = []
        self.outcomes: list[SagaOutcome] = []
        self.timers: list[TimerRequest] = []
        self.notes: list[LifecycleNote] = []
        self.settled: list[str] = []

    def result(self) -> Transition:
        self.instance.updated_at = self.now
        return Transition(
            instance=self.instance,
            commands=self.commands,
            outcomes=self.outcomes,
            timers=self.timers,
            notes=self.notes,
            settled_steps=self.settled,
        )

    # -- status changes ------------------------------------------------------

    def set_step_status(self, state: StepState, target: StepStatus) -> None:
        if not can_transition_step(state.status, target):
            raise IllegalTransitionException(
                f"Step '{state.name}' cannot move from {state.status} to {target}",
                code="ILLEGAL_STEP_TRANSITION",
                context={"correlation_id": self.instance.correlation_id},
            )
        state.status = target

    def set_saga_status(self, target: SagaStatus) -> None:
        if not can_transition_saga(self.instance.status, target):
            raise IllegalTransitionException(
                f"Saga cannot move from {self.instance.status} to {target}",
                code="ILLEGAL_SAGA_TRANSITION",
                context={"correlation_id": self.instance.correlation_id},
            )
        self.instance.status = target

    def mark_delivery(self, step_name: str, delivery_id: str | None) -> bool:
        """Record the delivery; ``False`` if it was already processed."""
        if delivery_id is None:
            return True
        status = self.instance.mark_delivery(step_name, delivery_id, self.policy.dedup_window)
        return status is DeliveryStatus.FRESH

    # -- forward progress ----------------------------------------------------

    def dispatch_phase(self, phase: int) -> None:
        self.instance.current_phase = phase
        for step_def in self.definition.steps_in_phase(phase):
            state = self.instance.step(step_def.name)
            self.set_step_status(state, StepStatus.IN_FLIGHT)
            state.dispatched_at = self.now
            self.commands.append(build_command(self.definition, self.instance, step_def.name, EventKind.FORWARD))
            timeout_ms = self.policy.step_timeout_ms(self.definition, step_def.name)
            if timeout_ms > 0:
                self.timers.append(
                    TimerRequest(
                        TimerKind.STEP_TIMEOUT,
                        self.instance.correlation_id,
                        step_def.name,
                        self.now + timedelta(milliseconds=timeout_ms),
                    )
                )

    def complete_step(self, state: StepState, payload: dict[str, Any]) -> None:
        self.set_step_status(state, StepStatus.COMPLETED)
        state.completed_at = self.now
        self.instance.business_data.update(copy.deepcopy(payload))
        self.settled.append(state.name)
        self.notes.append(LifecycleNote("step_completed", state.name))

        if self.instance.status is SagaStatus.RUNNING:
            self.maybe_advance_phase()
        else:
            # A sibling that was still in flight when the phase failed.
            self.advance_compensation()

    def maybe_advance_phase(self) -> None:
        phase = self.instance.current_phase
        states = [self.instance.step(s.name) for s in self.definition.steps_in_phase(phase)]
        if any(s.status is not StepStatus.COMPLETED for s in states):
            return

        if phase + 1 >= self.definition.phase_count:
            self.set_saga_status(SagaStatus.COMPLETED)
            self.instance.completed_at = self.now
            self.outcomes.append(SagaOutcome(SAGA_COMPLETED, self.instance.correlation_id, self.instance.saga_name))
            self.notes.append(LifecycleNote("completed", detail=SagaStatus.COMPLETED.value))
            return

        missing = [f for f in self.definition.required_fields(phase + 1) if f not in self.instance.business_data]
        if missing:
            self.begin_compensation(
                FailureReason.BUSINESS,
                None,
                f"missing required fields for phase {phase + 1}: {', '.join(missing)}",
            )
            return
        self.dispatch_phase(phase + 1)

    def fail_step(self, state: StepState, reason: str | None, failure_reason: FailureReason) -> None:
        self.set_step_status(state, StepStatus.FAILED)
        state.completed_at = self.now
        state.reason = reason
        self.settled.append(state.name)
        self.notes.append(LifecycleNote("step_failed", state.name, reason))

        if self.instance.status is SagaStatus.RUNNING:
            self.begin_compensation(failure_reason, state.name, reason)
        else:
            self.advance_compensation()

    # -- compensation --------------------------------------------------------

    def begin_compensation(self, failure_reason: FailureReason, step_name: str | None, detail: str | None) -> None:
        self.set_saga_status(SagaStatus.COMPENSATING)
        self.instance.failure_reason = failure_reason
        self.instance.failed_step = step_name
        self.instance.failure_detail = detail
        self.instance.compensation_phase = self.instance.current_phase
        self.advance_compensation()

    def advance_compensation(self) -> None:
        while True:
            phase = self.instance.compensation_phase
            if phase is None or phase < 0:
                self.finish_compensation()
                return

            states = [self.instance.step(s.name) for s in self.definition.steps_in_phase(phase)]
            for state in states:
                if not state.awaiting_compensation or state.compensation_in_flight or state.compensation_attempts:
                    continue
                if self.definition.step(state.name).compensable:
                    self.dispatch_compensation(state)
                else:
                    state.compensation_skipped = True
                    self.notes.append(LifecycleNote("compensation_skipped", state.name, "no compensating command"))

            if any(s.status is StepStatus.IN_FLIGHT or s.awaiting_compensation for s in states):
                return
            self.instance.compensation_phase = phase - 1

    def dispatch_compensation(self, state: StepState) -> None:
        state.compensation_attempts += 1
        state.compensation_in_flight = True
        state.compensation_dispatched_at = self.now
        command = build_command(self.definition, self.instance, state.name, EventKind.COMPENSATION)
        self.commands.append(command)
        if self.policy.compensation_timeout_ms > 0:
            self.timers.append(
                TimerRequest(
                    TimerKind.COMPENSATION_TIMEOUT,
                    self.instance.correlation_id,
                    state.name,
                    self.now + timedelta(milliseconds=self.policy.compensation_timeout_ms),
                    attempt=state.compensation_attempts,
                )
            )

    def compensation_failed(self, state: StepState, reason: str | None) -> None:
        state.compensation_in_flight = False
        state.last_compensation_error = reason
        self.settled.append(state.name)
        self.notes.append(LifecycleNote("compensation_failed", state.name, reason))
        if state.attempts_in_budget >= self.policy.compensation_max_attempts:
            self.refresh_stuck()
            self.notes.append(
                LifecycleNote("stuck", state.name, f"compensation failed {state.compensation_attempts} times: {reason}")
            )
            return
        delay_ms = self.policy.retry_delay_ms(state.attempts_in_budget)
        self.timers.append(
            TimerRequest(
                TimerKind.COMPENSATION_RETRY,
                self.instance.correlation_id,
                state.name,
                self.now + timedelta(milliseconds=delay_ms),
                attempt=state.compensation_attempts,
            )
        )

    def refresh_stuck(self) -> None:
        limit = self.policy.compensation_max_attempts
        self.instance.stuck = any(
            s.awaiting_compensation and not s.compensation_in_flight and s.attempts_in_budget >= limit
            for s in self.instance.steps.values()
        )

    def finish_compensation(self) -> None:
        reason = self.instance.failure_reason
        if reason is FailureReason.BUSINESS:
            self.set_saga_status(SagaStatus.FAILED)
            outcome = SagaOutcome(
                SAGA_FAILED,
                self.instance.correlation_id,
                self.instance.saga_name,
                reason=self.instance.failure_detail or reason.value,
            )
        else:
            self.set_saga_status(SagaStatus.ABORTED)
            outcome = SagaOutcome(
                SAGA_ABORTED,
                self.instance.correlation_id,
                self.instance.saga_name,
                reason=self.instance.failure_detail,
            )
        self.instance.completed_at = self.now
        self.instance.compensation_phase = -1
        self.instance.stuck = False
        self.outcomes.append(outcome)
        self.notes.append(LifecycleNote("completed", detail=self.instance.status.value))


# ---------------------------------------------------------------------------
# Signal handlers
# ---------------------------------------------------------------------------


def _ignored(reason: str) -> Transition:
    return Transition(ignored=reason)


def _on_step_outcome(p: _Pass, signal: StepOutcomeSignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if signal.delivery_id is not None and p.instance.delivery_seen(signal.step_name, signal.delivery_id):
        return Transition(duplicate=True, ignored="duplicate delivery")
    if state.status is not StepStatus.IN_FLIGHT:
        return _ignored(f"step '{state.name}' is {state.status}, not in flight")

    p.mark_delivery(signal.step_name, signal.delivery_id)
    if signal.outcome is Outcome.SUCCESS:
        p.complete_step(state, signal.payload)
    else:
        p.fail_step(state, signal.reason, FailureReason.BUSINESS)
    return p.result()


def _on_step_timeout(p: _Pass, signal: StepTimeoutSignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if state.status is not StepStatus.IN_FLIGHT:
        return _ignored(f"step '{state.name}' is {state.status}, timer is stale")
    p.fail_step(state, TIMEOUT_REASON, FailureReason.TIMEOUT)
    return p.result()


def _on_compensation_outcome(p: _Pass, signal: CompensationOutcomeSignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if signal.delivery_id is not None and p.instance.delivery_seen(signal.step_name, signal.delivery_id):
        return Transition(duplicate=True, ignored="duplicate delivery")
    if p.instance.status is not SagaStatus.COMPENSATING or not state.awaiting_compensation:
        return _ignored(f"no compensation pending for step '{state.name}'")
    attempt = signal.attempt if signal.attempt is not None else compensation_attempt(signal.delivery_id)
    if attempt is None:
        attempt = state.compensation_attempts
    if attempt < 1 or attempt > state.compensation_attempts:
        return _ignored(f"step '{state.name}' never dispatched compensation attempt {attempt}")

    if signal.outcome is Outcome.SUCCESS:
        # Any attempt undoing the step settles it, even after a timeout.
        p.mark_delivery(signal.step_name, signal.delivery_id)
        p.set_step_status(state, StepStatus.COMPENSATED)
        state.compensation_in_flight = False
        p.settled.append(state.name)
        p.notes.append(LifecycleNote("compensated", state.name))
        p.refresh_stuck()
        p.advance_compensation()
        return p.result()

    if not state.compensation_in_flight or attempt != state.compensation_attempts:
        return _ignored(f"failure of compensation attempt {attempt} for step '{state.name}' is stale")
    p.mark_delivery(signal.step_name, signal.delivery_id)
    p.compensation_failed(state, signal.reason)
    return p.result()


def _on_compensation_timeout(p: _Pass, signal: CompensationTimeoutSignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if not state.compensation_in_flight or state.compensation_attempts != signal.attempt:
        return _ignored(f"compensation timer for step '{state.name}' is stale")
    p.compensation_failed(state, TIMEOUT_REASON)
    return p.result()


def _on_compensation_retry(p: _Pass, signal: CompensationRetrySignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if p.instance.status is not SagaStatus.COMPENSATING:
        return _ignored("saga is not compensating")
    if not state.awaiting_compensation or state.compensation_in_flight:
        return _ignored(f"step '{state.name}' has no compensation to retry")
    if not p.definition.step(state.name).compensable:
        return _ignored(f"step '{state.name}' has no compensating command")

    if signal.force:
        state.compensation_attempt_base = state.compensation_attempts
    elif (
        state.compensation_attempts != signal.attempt
        or state.attempts_in_budget >= p.policy.compensation_max_attempts
    ):
        return _ignored(f"retry timer for step '{state.name}' is stale")

    p.dispatch_compensation(state)
    p.refresh_stuck()
    return p.result()


def _on_skip_compensation(p: _Pass, signal: SkipCompensationSignal) -> Transition:
    if not p.definition.has_step(signal.step_name):
        return _ignored(f"unknown step '{signal.step_name}'")
    state = p.instance.step(signal.step_name)
    if p.instance.status is not SagaStatus.COMPENSATING or not state.awaiting_compensation:
        return _ignored(f"step '{state.name}' has no pending compensation")

    state.compensation_skipped = True
    state.compensation_in_flight = False
    p.settled.append(state.name)
    p.notes.append(LifecycleNote("compensation_skipped", state.name, "operator"))
    p.refresh_stuck()
    p.advance_compensation()
    return p.result()


def _on_abort(p: _Pass, signal: AbortSignal) -> Transition:
    if p.instance.status is not SagaStatus.RUNNING:
        return _ignored(f"saga is {p.instance.status}")

    for state in p.instance.steps_with_status(StepStatus.IN_FLIGHT):
        p.set_step_status(state, StepStatus.FAILED)
        state.completed_at = p.now
        state.reason = ABORT_REASON
        p.settled.append(state.name)
        p.notes.append(LifecycleNote("step_failed", state.name, ABORT_REASON))
    p.begin_compensation(FailureReason.ABORTED, None, signal.reason or ABORT_REASON)
    return p.result()


_HANDLERS: dict[type, Any] = {
    StepOutcomeSignal: _on_step_outcome,
    StepTimeoutSignal: _on_step_timeout,
    CompensationOutcomeSignal: _on_compensation_outcome,
    CompensationTimeoutSignal: _on_compensation_timeout,
    CompensationRetrySignal: _on_compensation_retry,
    SkipCompensationSignal: _on_skip_compensation,
    AbortSignal: _on_abort,
}
