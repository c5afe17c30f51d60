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
"""Tests for the pure saga transition function."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest

from sagaflow.kernel.exceptions import IllegalTransitionException
from sagaflow.saga.core.instance import SagaInstance
from sagaflow.saga.core.messages import SAGA_ABORTED, SAGA_COMPLETED, SAGA_FAILED
from sagaflow.saga.definition.saga_builder import SagaBuilder
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.engine.signals import (
    AbortSignal,
    CompensationOutcomeSignal,
    CompensationRetrySignal,
    CompensationTimeoutSignal,
    SkipCompensationSignal,
    StepOutcomeSignal,
    StepTimeoutSignal,
)
from sagaflow.saga.engine.transition import (
    Transition,
    TransitionPolicy,
    _Pass,
    evaluate,
    inflight_commands,
    pending_timers,
    start,
)
from sagaflow.saga.types import (
    EventKind,
    FailureReason,
    Outcome,
    SagaStatus,
    StepStatus,
    TimerKind,
)

# ── Helpers ──────────────────────────────────────────────────

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CID = "saga-1"
POLICY = TransitionPolicy(
    default_step_timeout_ms=1000,
    compensation_max_attempts=3,
    compensation_backoff_ms=100,
    compensation_timeout_ms=500,
    dedup_window=256,
)


def _two_phase() -> SagaDefinition:
    """Phase 0 runs ``a`` and ``b`` in parallel, phase 1 runs ``c``."""
    return (
        SagaBuilder("order")
        .step("a").command("DoA").compensate("UndoA").group(0).add()
        .step("b").command("DoB").compensate("UndoB").group(0).add()
        .step("c").command("DoC").compensate("UndoC").group(1).add()
        .build()
    )


def _sequential() -> SagaDefinition:
    return (
        SagaBuilder("chain")
        .step("x").command("DoX").compensate("UndoX").add()
        .step("y").command("DoY").compensate("UndoY").add()
        .step("z").command("DoZ").compensate("UndoZ").add()
        .sequential()
        .build()
    )


def _started(definition: SagaDefinition, payload: dict | None = None) -> SagaInstance:
    result = start(definition, CID, payload or {}, NOW, POLICY)
    assert result.instance is not None
    return result.instance


def _apply(definition: SagaDefinition, instance: SagaInstance, signal, now: datetime = NOW) -> Transition:
    result = evaluate(definition, instance, signal, now, POLICY)
    assert result.changed, result.ignored
    return result


def _ok(step: str, payload: dict | None = None) -> StepOutcomeSignal:
    return StepOutcomeSignal(step, Outcome.SUCCESS, f"{CID}/{step}/forward", payload or {})


def _fail(step: str, reason: str = "declined") -> StepOutcomeSignal:
    return StepOutcomeSignal(step, Outcome.FAILURE, f"{CID}/{step}/forward", reason=reason)


def _comp(step: str, outcome: Outcome = Outcome.SUCCESS, attempt: int = 1, reason: str | None = None):
    return CompensationOutcomeSignal(step, outcome, f"{CID}/{step}/compensate/{attempt}", reason)


def _statuses(instance: SagaInstance) -> dict[str, StepStatus]:
    return {name: s.status for name, s in instance.steps.items()}


# ── Start ────────────────────────────────────────────────────


class TestStart:
    def test_creates_version_zero_instance_with_phase_zero_in_flight(self) -> None:
        result = start(_two_phase(), CID, {"orderId": "o-1"}, NOW, POLICY)

        inst = result.instance
        assert inst is not None
        assert inst.version == 0
        assert inst.status is SagaStatus.RUNNING
        assert inst.current_phase == 0
        assert _statuses(inst) == {"a": StepStatus.IN_FLIGHT, "b": StepStatus.IN_FLIGHT, "c": StepStatus.PENDING}
        assert inst.business_data == {"orderId": "o-1"}

    def test_dispatches_forward_commands_with_stable_ids(self) -> None:
        result = start(_two_phase(), CID, {"orderId": "o-1"}, NOW, POLICY)

        assert [c.step_name for c in result.commands] == ["a", "b"]
        cmd = result.commands[0]
        assert cmd.kind is EventKind.FORWARD
        assert cmd.command_type == "DoA"
        assert cmd.channel == "a"
        assert cmd.delivery_id == f"{CID}/a/forward"
        assert cmd.idempotency_key == f"{CID}/a/forward"
        assert cmd.payload == {"orderId": "o-1"}

    def test_arms_step_timeouts(self) -> None:
        result = start(_two_phase(), CID, {}, NOW, POLICY)

        assert {(t.kind, t.step_name) for t in result.timers} == {
            (TimerKind.STEP_TIMEOUT, "a"),
            (TimerKind.STEP_TIMEOUT, "b"),
        }
        assert all(t.due_at == NOW + timedelta(seconds=1) for t in result.timers)
        assert [n.event for n in result.notes] == ["started"]

    def test_step_timeout_override_wins_over_default(self) -> None:
        definition = SagaBuilder("s").step("a").command("DoA").timeout_ms(250).add().build()
        result = start(definition, CID, {}, NOW, POLICY)
        assert result.timers[0].due_at == NOW + timedelta(milliseconds=250)

    def test_zero_timeout_arms_no_timer(self) -> None:
        policy = TransitionPolicy(default_step_timeout_ms=0)
        result = start(_two_phase(), CID, {}, NOW, policy)
        assert result.timers == []


# ── Forward progress ─────────────────────────────────────────


class TestForwardProgress:
    def test_phase_waits_for_every_step(self) -> None:
        definition = _two_phase()
        result = _apply(definition, _started(definition), _ok("a"))

        assert result.instance.step("a").status is StepStatus.COMPLETED
        assert result.instance.current_phase == 0
        assert result.commands == []
        assert result.settled_steps == ["a"]

    def test_completing_phase_dispatches_next(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance
        result = _apply(definition, inst, _ok("b"))

        assert result.instance.current_phase == 1
        assert result.instance.step("c").status is StepStatus.IN_FLIGHT
        assert [c.step_name for c in result.commands] == ["c"]

    def test_phase_advance_is_independent_of_arrival_order(self) -> None:
        definition = _two_phase()
        outcomes = []
        for order in itertools.permutations(["a", "b"]):
            inst = _started(definition)
            result = None
            for step in order:
                result = _apply(definition, inst, _ok(step, {step: True}))
                inst = result.instance
            outcomes.append((_statuses(inst), inst.business_data, [c.delivery_id for c in result.commands]))

        assert outcomes[0] == outcomes[1]

    def test_success_payload_is_merged_into_business_data(self) -> None:
        definition = _two_phase()
        inst = _started(definition, {"orderId": "o-1"})
        result = _apply(definition, inst, _ok("a", {"reservationId": "r-9"}))

        assert result.instance.business_data == {"orderId": "o-1", "reservationId": "r-9"}
        # The loaded instance is never mutated.
        assert inst.business_data == {"orderId": "o-1"}
        assert inst.step("a").status is StepStatus.IN_FLIGHT

    def test_last_phase_completes_saga(self) -> None:
        definition = _two_phase()
        inst = _started(definition)
        for step in ("a", "b", "c"):
            result = _apply(definition, inst, _ok(step))
            inst = result.instance

        assert inst.status is SagaStatus.COMPLETED
        assert inst.completed_at == NOW
        assert [o.type for o in result.outcomes] == [SAGA_COMPLETED]
        assert result.notes[-1].event == "completed"

    def test_duplicate_delivery_is_reported_and_not_applied(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance

        result = evaluate(definition, inst, _ok("a"), NOW, POLICY)

        assert result.duplicate is True
        assert result.changed is False

    def test_duplicate_on_terminal_saga_is_still_a_duplicate(self) -> None:
        definition = SagaBuilder("s").step("a").command("DoA").add().build()
        inst = _apply(definition, _started(definition), _ok("a")).instance
        assert inst.status is SagaStatus.COMPLETED

        assert evaluate(definition, inst, _ok("a"), NOW, POLICY).duplicate is True

    def test_event_for_step_not_in_flight_is_ignored(self) -> None:
        definition = _two_phase()
        result = evaluate(definition, _started(definition), _ok("c"), NOW, POLICY)
        assert result.changed is False
        assert "not in flight" in result.ignored

    def test_unknown_step_is_ignored(self) -> None:
        definition = _two_phase()
        result = evaluate(definition, _started(definition), _ok("nope"), NOW, POLICY)
        assert result.changed is False

    def test_missing_required_fields_for_next_phase_compensates(self) -> None:
        definition = (
            SagaBuilder("s")
            .step("a").command("DoA").compensate("UndoA").add()
            .step("b").command("DoB").requires("paymentId").add()
            .sequential()
            .build()
        )
        result = _apply(definition, _started(definition), _ok("a"))

        assert result.instance.status is SagaStatus.COMPENSATING
        assert result.instance.failure_reason is FailureReason.BUSINESS
        assert "paymentId" in result.instance.failure_detail
        assert [(c.step_name, c.kind) for c in result.commands] == [("a", EventKind.COMPENSATION)]
        assert result.instance.step("b").status is StepStatus.PENDING


# ── Failure and compensation ─────────────────────────────────


class TestCompensation:
    def test_failure_in_later_phase_compensates_earlier_phase_concurrently(self) -> None:
        definition = _two_phase()
        inst = _started(definition)
        for step in ("a", "b"):
            inst = _apply(definition, inst, _ok(step)).instance

        result = _apply(definition, inst, _fail("c", "card declined"))

        inst = result.instance
        assert inst.status is SagaStatus.COMPENSATING
        assert inst.failed_step == "c"
        assert inst.step("c").status is StepStatus.FAILED
        assert inst.compensation_phase == 0
        assert sorted(c.delivery_id for c in result.commands) == [
            f"{CID}/a/compensate/1",
            f"{CID}/b/compensate/1",
        ]
        assert all(c.kind is EventKind.COMPENSATION for c in result.commands)
        assert {t.kind for t in result.timers} == {TimerKind.COMPENSATION_TIMEOUT}

    def test_compensation_success_finishes_failed_with_reason(self) -> None:
        definition = _two_phase()
        inst = _started(definition)
        for step in ("a", "b"):
            inst = _apply(definition, inst, _ok(step)).instance
        inst = _apply(definition, inst, _fail("c", "card declined")).instance

        inst = _apply(definition, inst, _comp("b")).instance
        assert inst.status is SagaStatus.COMPENSATING
        result = _apply(definition, inst, _comp("a"))

        inst = result.instance
        assert inst.status is SagaStatus.FAILED
        assert _statuses(inst) == {"a": StepStatus.COMPENSATED, "b": StepStatus.COMPENSATED, "c": StepStatus.FAILED}
        assert [(o.type, o.reason) for o in result.outcomes] == [(SAGA_FAILED, "card declined")]

    def test_sequential_compensation_runs_in_reverse_order(self) -> None:
        definition = _sequential()
        inst = _started(definition)
        for step in ("x", "y"):
            inst = _apply(definition, inst, _ok(step)).instance

        result = _apply(definition, inst, _fail("z"))
        assert [c.step_name for c in result.commands] == ["y"]

        result = _apply(definition, result.instance, _comp("y"))
        assert [c.step_name for c in result.commands] == ["x"]

        result = _apply(definition, result.instance, _comp("x"))
        assert result.instance.status is SagaStatus.FAILED

    def test_late_sibling_success_is_compensated_before_finishing(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _fail("b")).instance

        assert inst.status is SagaStatus.COMPENSATING
        assert inst.step("a").status is StepStatus.IN_FLIGHT

        result = _apply(definition, inst, _ok("a"))
        assert result.instance.step("a").status is StepStatus.COMPLETED
        assert [c.delivery_id for c in result.commands] == [f"{CID}/a/compensate/1"]
        assert result.outcomes == []

        result = _apply(definition, result.instance, _comp("a"))
        assert result.instance.status is SagaStatus.FAILED
        assert result.instance.step("a").status is StepStatus.COMPENSATED
        assert result.instance.step("c").status is StepStatus.PENDING

    def test_late_sibling_failure_finishes_without_compensation(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _fail("b")).instance

        result = _apply(definition, inst, _fail("a"))

        assert result.instance.status is SagaStatus.FAILED
        assert result.commands == []
        assert [o.type for o in result.outcomes] == [SAGA_FAILED]

    def test_step_without_compensating_command_is_skipped(self) -> None:
        definition = (
            SagaBuilder("s")
            .step("notify").command("SendEmail").add()
            .step("charge").command("Charge").add()
            .sequential()
            .build()
        )
        inst = _apply(definition, _started(definition), _ok("notify")).instance
        result = _apply(definition, inst, _fail("charge"))

        assert result.instance.status is SagaStatus.FAILED
        assert result.instance.step("notify").compensation_skipped is True
        assert result.instance.step("notify").status is StepStatus.COMPLETED
        assert result.commands == []


# ── Timeouts ─────────────────────────────────────────────────


class TestTimeouts:
    def test_timeout_behaves_like_failure_with_timeout_reason(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance

        by_timeout = _apply(definition, inst, StepTimeoutSignal("b"))
        by_failure = _apply(definition, inst, _fail("b", "timeout"))

        assert _statuses(by_timeout.instance) == _statuses(by_failure.instance)
        assert [c.delivery_id for c in by_timeout.commands] == [c.delivery_id for c in by_failure.commands]
        assert by_timeout.instance.step("b").reason == "timeout"
        assert by_timeout.instance.failure_reason is FailureReason.TIMEOUT

    def test_timeout_saga_ends_aborted(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance
        inst = _apply(definition, inst, StepTimeoutSignal("b")).instance

        result = _apply(definition, inst, _comp("a"))

        assert result.instance.status is SagaStatus.ABORTED
        assert [o.type for o in result.outcomes] == [SAGA_ABORTED]

    def test_stale_timeout_is_ignored(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance
        result = evaluate(definition, inst, StepTimeoutSignal("a"), NOW, POLICY)
        assert result.changed is False

    def test_late_success_after_timeout_is_ignored(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), StepTimeoutSignal("a")).instance
        result = evaluate(definition, inst, _ok("a"), NOW, POLICY)
        assert result.changed is False


# ── Abort ────────────────────────────────────────────────────


class TestAbort:
    def test_abort_fails_in_flight_steps_and_compensates_completed(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance

        result = _apply(definition, inst, AbortSignal("customer cancelled"))

        inst = result.instance
        assert inst.status is SagaStatus.COMPENSATING
        assert inst.failure_reason is FailureReason.ABORTED
        assert inst.step("b").status is StepStatus.FAILED
        assert inst.step("b").reason == "aborted"
        assert [c.step_name for c in result.commands] == ["a"]

        result = _apply(definition, inst, _comp("a"))
        assert result.instance.status is SagaStatus.ABORTED
        assert [(o.type, o.reason) for o in result.outcomes] == [(SAGA_ABORTED, "customer cancelled")]

    def test_abort_with_nothing_completed_finishes_immediately(self) -> None:
        definition = _two_phase()
        result = _apply(definition, _started(definition), AbortSignal())

        assert result.instance.status is SagaStatus.ABORTED
        assert result.commands == []
        assert sorted(result.settled_steps) == ["a", "b"]

    def test_abort_is_ignored_while_compensating(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance
        inst = _apply(definition, inst, _fail("b")).instance

        assert evaluate(definition, inst, AbortSignal(), NOW, POLICY).changed is False

    def test_terminal_saga_ignores_every_signal(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), AbortSignal()).instance

        for signal in (AbortSignal(), StepTimeoutSignal("a"), SkipCompensationSignal("a")):
            assert evaluate(definition, inst, signal, NOW, POLICY).changed is False


# ── Compensation retries and stuck sagas ─────────────────────


def _compensating_on_a() -> tuple[SagaDefinition, SagaInstance]:
    definition = _sequential()
    inst = _apply(definition, _started(definition), _ok("x")).instance
    inst = _apply(definition, inst, _fail("y")).instance
    return definition, inst


class TestCompensationRetries:
    def test_failed_compensation_schedules_backoff_retry(self) -> None:
        definition, inst = _compensating_on_a()

        result = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1, "db down"))

        state = result.instance.step("x")
        assert state.compensation_in_flight is False
        assert state.last_compensation_error == "db down"
        assert [(t.kind, t.attempt, t.due_at) for t in result.timers] == [
            (TimerKind.COMPENSATION_RETRY, 1, NOW + timedelta(milliseconds=100))
        ]

    def test_retry_redispatches_with_next_attempt_and_doubles_backoff(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance

        result = _apply(definition, inst, CompensationRetrySignal("x", 1))
        assert [c.delivery_id for c in result.commands] == [f"{CID}/x/compensate/2"]
        assert result.commands[0].idempotency_key == f"{CID}/x/compensate"

        result = _apply(definition, result.instance, _comp("x", Outcome.FAILURE, 2))
        assert result.timers[0].due_at == NOW + timedelta(milliseconds=200)

    def test_stale_retry_is_ignored(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance

        assert evaluate(definition, inst, CompensationRetrySignal("x", 7), NOW, POLICY).changed is False

    def test_exhausted_attempts_flag_saga_stuck(self) -> None:
        definition, inst = _compensating_on_a()
        for attempt in (1, 2):
            inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, attempt)).instance
            inst = _apply(definition, inst, CompensationRetrySignal("x", attempt)).instance

        result = _apply(definition, inst, _comp("x", Outcome.FAILURE, 3))

        assert result.instance.stuck is True
        assert result.instance.status is SagaStatus.COMPENSATING
        assert result.timers == []
        assert "stuck" in [n.event for n in result.notes]
        assert evaluate(definition, result.instance, CompensationRetrySignal("x", 3), NOW, POLICY).changed is False

    def test_operator_retry_grants_fresh_budget(self) -> None:
        definition, inst = _compensating_on_a()
        for attempt in (1, 2):
            inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, attempt)).instance
            inst = _apply(definition, inst, CompensationRetrySignal("x", attempt)).instance
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 3)).instance

        result = _apply(definition, inst, CompensationRetrySignal("x", force=True))

        assert result.instance.stuck is False
        assert [c.delivery_id for c in result.commands] == [f"{CID}/x/compensate/4"]

        result = _apply(definition, result.instance, _comp("x", Outcome.SUCCESS, 4))
        assert result.instance.status is SagaStatus.FAILED

    def test_skip_compensation_continues_unwinding(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance

        result = _apply(definition, inst, SkipCompensationSignal("x"))

        assert result.instance.step("x").compensation_skipped is True
        assert result.instance.status is SagaStatus.FAILED

    def test_compensation_timeout_counts_as_failed_attempt(self) -> None:
        definition, inst = _compensating_on_a()

        result = _apply(definition, inst, CompensationTimeoutSignal("x", 1))

        assert result.instance.step("x").last_compensation_error == "timeout"
        assert result.timers[0].kind is TimerKind.COMPENSATION_RETRY

    def test_compensation_timeout_for_old_attempt_is_ignored(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance
        inst = _apply(definition, inst, CompensationRetrySignal("x", 1)).instance

        assert evaluate(definition, inst, CompensationTimeoutSignal("x", 1), NOW, POLICY).changed is False

    def test_success_arriving_after_timeout_settles_step(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, CompensationTimeoutSignal("x", 1)).instance
        assert inst.step("x").compensation_in_flight is False

        result = _apply(definition, inst, _comp("x", Outcome.SUCCESS, 1))

        assert result.instance.step("x").status is StepStatus.COMPENSATED
        assert result.instance.status is SagaStatus.FAILED
        assert [o.type for o in result.outcomes] == [SAGA_FAILED]

    def test_success_after_final_timeout_clears_stuck(self) -> None:
        policy = TransitionPolicy(
            default_step_timeout_ms=1000,
            compensation_max_attempts=1,
            compensation_backoff_ms=100,
            compensation_timeout_ms=500,
        )
        definition = _sequential()
        inst = evaluate(definition, _started(definition), _ok("x"), NOW, policy).instance
        inst = evaluate(definition, inst, _fail("y"), NOW, policy).instance
        inst = evaluate(definition, inst, CompensationTimeoutSignal("x", 1), NOW, policy).instance
        assert inst.stuck is True

        result = evaluate(definition, inst, _comp("x", Outcome.SUCCESS, 1), NOW, policy)

        assert result.changed is True
        assert result.instance.stuck is False
        assert result.instance.status is SagaStatus.FAILED

    def test_stale_failure_does_not_consume_current_attempt(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, CompensationTimeoutSignal("x", 1)).instance
        inst = _apply(definition, inst, CompensationRetrySignal("x", 1)).instance
        assert inst.step("x").compensation_attempts == 2

        stale = evaluate(definition, inst, _comp("x", Outcome.FAILURE, 1, "late"), NOW, POLICY)
        assert stale.changed is False
        assert inst.step("x").compensation_in_flight is True

        result = _apply(definition, inst, _comp("x", Outcome.SUCCESS, 2))
        assert result.instance.step("x").status is StepStatus.COMPENSATED
        assert result.instance.status is SagaStatus.FAILED

    def test_success_of_earlier_attempt_wins_over_retry_in_flight(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance
        inst = _apply(definition, inst, CompensationRetrySignal("x", 1)).instance

        result = _apply(definition, inst, _comp("x", Outcome.SUCCESS, 1))

        assert result.instance.status is SagaStatus.FAILED
        late = evaluate(definition, result.instance, _comp("x", Outcome.FAILURE, 2), NOW, POLICY)
        assert late.changed is False

    def test_outcome_for_undispatched_attempt_is_ignored(self) -> None:
        definition, inst = _compensating_on_a()

        result = evaluate(definition, inst, _comp("x", Outcome.SUCCESS, 5), NOW, POLICY)

        assert result.changed is False
        assert result.instance.step("x").status is StepStatus.COMPLETED

    def test_explicit_attempt_overrides_delivery_id(self) -> None:
        definition, inst = _compensating_on_a()
        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance
        inst = _apply(definition, inst, CompensationRetrySignal("x", 1)).instance

        signal = CompensationOutcomeSignal("x", Outcome.FAILURE, attempt=1)
        assert evaluate(definition, inst, signal, NOW, POLICY).changed is False


# ── Rehydration helpers ──────────────────────────────────────


class TestRehydration:
    def test_pending_timers_rebuild_step_deadlines(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _ok("a")).instance

        timers = pending_timers(definition, inst, NOW, POLICY)

        assert [(t.kind, t.step_name, t.due_at) for t in timers] == [
            (TimerKind.STEP_TIMEOUT, "b", NOW + timedelta(seconds=1))
        ]

    def test_pending_timers_rebuild_compensation_timers(self) -> None:
        definition, inst = _compensating_on_a()
        assert [(t.kind, t.attempt) for t in pending_timers(definition, inst, NOW, POLICY)] == [
            (TimerKind.COMPENSATION_TIMEOUT, 1)
        ]

        inst = _apply(definition, inst, _comp("x", Outcome.FAILURE, 1)).instance
        assert [(t.kind, t.attempt) for t in pending_timers(definition, inst, NOW, POLICY)] == [
            (TimerKind.COMPENSATION_RETRY, 1)
        ]

    def test_inflight_commands_respect_cutoff(self) -> None:
        definition = _two_phase()
        inst = _started(definition)

        assert inflight_commands(definition, inst, NOW) == []
        later = NOW + timedelta(minutes=5)
        assert [c.delivery_id for c in inflight_commands(definition, inst, later)] == [
            f"{CID}/a/forward",
            f"{CID}/b/forward",
        ]


class TestStateMachineGuards:
    def test_failed_step_cannot_complete(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), _fail("a")).instance
        p = _Pass(definition, inst, NOW, POLICY)

        with pytest.raises(IllegalTransitionException):
            p.set_step_status(inst.step("a"), StepStatus.COMPLETED)

    def test_terminal_saga_cannot_reopen(self) -> None:
        definition = _two_phase()
        inst = _apply(definition, _started(definition), AbortSignal()).instance
        p = _Pass(definition, inst, NOW, POLICY)

        with pytest.raises(IllegalTransitionException):
            p.set_saga_status(SagaStatus.RUNNING)
