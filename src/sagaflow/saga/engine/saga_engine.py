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
"""Saga engine — runs evaluation passes against the state store and dispatches their effects.

One pass per inbound message or wake-up:

1. fast-path dedup in the :class:`IdempotencyCache`;
2. load the instance and interpret the signal with the pure
   :func:`~sagaflow.saga.engine.transition.evaluate`;
3. compare-and-swap the new instance (a lost race re-runs the pass from a
   fresh read, with bounded exponential backoff);
4. only once the write won: cancel/arm timers, send commands, publish
   outcomes and emit lifecycle events.

Store and broker failures never escape the ``handle_*`` / ``on_*`` entry
points; they are reported through :class:`EvaluationResult`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sagaflow.kernel.exceptions import (
    IllegalTransitionException,
    RetryExhaustedException,
    SagaNotFoundException,
    ValidationException,
    VersionConflictException,
)
from sagaflow.logging.port import LoggingPort
from sagaflow.logging.structlog_adapter import StructlogAdapter
from sagaflow.saga.channel.channel import SagaMessageChannel
from sagaflow.saga.config.properties import SagaEngineProperties
from sagaflow.saga.core.instance import SagaInstance
from sagaflow.saga.core.messages import Command, StepEvent, compensation_attempt
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.definition.saga_registry import SagaRegistry
from sagaflow.saga.engine import transition
from sagaflow.saga.engine.signals import (
    AbortSignal,
    CompensationOutcomeSignal,
    CompensationRetrySignal,
    LifecycleNote,
    Signal,
    SkipCompensationSignal,
    StepOutcomeSignal,
    StepTimeoutSignal,
    TimerRequest,
)
from sagaflow.saga.engine.transition import Transition, TransitionPolicy
from sagaflow.saga.idempotency.cache import IdempotencyCache
from sagaflow.saga.observability.port import SagaEventsPort
from sagaflow.saga.persistence.ports import SagaStatePort
from sagaflow.saga.types import Disposition, EventKind, Outcome

if TYPE_CHECKING:
    from sagaflow.saga.scheduling.timeout_scheduler import TimeoutScheduler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class EvaluationResult:
    """What one evaluation pass did.

    ``instance`` is the persisted instance after an ``APPLIED`` pass, or the
    instance as loaded when the signal was ignored.
    """

    disposition: Disposition
    correlation_id: str
    instance: SagaInstance | None = None
    detail: str | None = None

    @property
    def applied(self) -> bool:
        return self.disposition is Disposition.APPLIED


class SagaEngine:
    """Coordinates saga instances through the store, the message channel and the timers.

    Args:
        registry: Saga definitions by name.
        store: Adapter satisfying :class:`SagaStatePort`.
        channel: Outbound command/outcome channel.
        scheduler: Timeout scheduler; without one no deadlines are armed.
        events_port: Optional lifecycle events sink.
        cache: Dedup fast path; a default-sized cache is created if omitted.
        properties: Engine settings (CAS retries, compensation policy...).
        clock: UTC clock used for timestamps and deadlines.
        sleep: Awaitable used for CAS backoff (injectable for tests).
        id_factory: Generates correlation ids when the caller gives none.
        logging_port: Binds the correlation id to log records of each pass.
    """

    def __init__(
        self,
        registry: SagaRegistry,
        store: SagaStatePort,
        channel: SagaMessageChannel,
        scheduler: TimeoutScheduler | None = None,
        events_port: SagaEventsPort | None = None,
        cache: IdempotencyCache | None = None,
        properties: SagaEngineProperties | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        logging_port: LoggingPort | None = None,
    ) -> None:
        self._props = properties or SagaEngineProperties()
        self._policy = TransitionPolicy.from_properties(self._props)
        self._registry = registry
        self._store = store
        self._channel = channel
        self._scheduler = scheduler
        self._events_port = events_port
        if cache is None:
            cache = IdempotencyCache(self._props.dedup_cache_size, self._props.dedup_retention_seconds)
        self._cache = cache
        self._clock = clock
        self._sleep = sleep
        self._id_factory = id_factory
        self._logging = logging_port if logging_port is not None else StructlogAdapter()
        if scheduler is not None:
            scheduler.bind(self.on_timer)

    @property
    def policy(self) -> TransitionPolicy:
        return self._policy

    @property
    def registry(self) -> SagaRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Starting sagas
    # ------------------------------------------------------------------

    async def start_saga(
        self,
        saga_name: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Create a saga instance and dispatch its first phase.

        Returns:
            The correlation id of the new instance.

        Raises:
            SagaDefinitionException: If *saga_name* is not registered.
            ValidationException: If *payload* lacks a field phase 0 requires.
            DuplicateKeyException: If *correlation_id* is already in use.
            IllegalTransitionException: If the definition yields no first phase to dispatch.
        """
        definition = self._registry.require(saga_name)
        payload = dict(payload or {})
        missing = [f for f in definition.required_fields(0) if f not in payload]
        if missing:
            raise ValidationException(
                f"Saga '{saga_name}' requires fields: {', '.join(missing)}",
                code="MISSING_REQUIRED_FIELDS",
                context={"saga_name": saga_name, "missing": missing},
            )

        cid = correlation_id or self._id_factory()
        with self._logging.saga_context(cid, saga=saga_name):
            result = transition.start(definition, cid, payload, self._clock(), self._policy)
            if result.instance is None:
                raise IllegalTransitionException(
                    f"Saga '{saga_name}' could not be started: {result.ignored}",
                    code="SAGA_NOT_STARTED",
                    context={"saga_name": saga_name, "correlation_id": cid},
                )
            stored = await self._store.create(result.instance)
            logger.info("Started saga '%s' [correlation_id=%s]", saga_name, cid)
            await self._apply_effects(definition, stored, result)
        return cid

    async def get_saga(self, correlation_id: str) -> SagaInstance:
        """Return the stored instance.

        Raises:
            SagaNotFoundException: If no such saga exists.
        """
        return await self._store.load(correlation_id)

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    async def handle_event(
        self,
        correlation_id: str,
        step_name: str,
        outcome: Outcome,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
        delivery_id: str | None = None,
    ) -> EvaluationResult:
        """Apply a participant's answer to a forward command."""
        signal = StepOutcomeSignal(step_name, outcome, delivery_id, dict(payload or {}), reason)
        return await self._run(correlation_id, signal, step_name, delivery_id)

    async def handle_timeout(self, correlation_id: str, step_name: str) -> EvaluationResult:
        """Treat an elapsed step deadline as a failure with reason ``"timeout"``."""
        return await self._run(correlation_id, StepTimeoutSignal(step_name))

    async def handle_compensation_outcome(
        self,
        correlation_id: str,
        step_name: str,
        outcome: Outcome,
        reason: str | None = None,
        delivery_id: str | None = None,
        attempt: int | None = None,
    ) -> EvaluationResult:
        """Apply a participant's answer to a compensating command.

        *attempt* defaults to the one encoded in *delivery_id*.  A success
        settles the step whichever attempt it answers; a failure only counts
        for the attempt currently in flight.
        """
        if attempt is None:
            attempt = compensation_attempt(delivery_id)
        signal = CompensationOutcomeSignal(step_name, outcome, delivery_id, reason, attempt)
        return await self._run(correlation_id, signal, step_name, delivery_id)

    async def abort_saga(self, correlation_id: str, reason: str | None = None) -> EvaluationResult:
        """Fail every in-flight step and compensate what already completed."""
        return await self._run(correlation_id, AbortSignal(reason))

    async def on_event(self, event: StepEvent) -> EvaluationResult:
        """Route a decoded participant event to the matching handler."""
        if event.outcome is not None:
            kind = event.kind or _kind_from_delivery_id(event.delivery_id)
            outcome = event.outcome
        else:
            classified = await self._classify(event)
            if isinstance(classified, EvaluationResult):
                return classified
            kind, outcome = classified

        if kind is EventKind.COMPENSATION:
            return await self.handle_compensation_outcome(
                event.correlation_id, event.step_name, outcome, event.reason, event.delivery_id
            )
        return await self.handle_event(
            event.correlation_id, event.step_name, outcome, event.payload, event.reason, event.delivery_id
        )

    async def on_timer(self, timer: TimerRequest) -> EvaluationResult:
        """Entry point for the timeout scheduler."""
        return await self._run(timer.correlation_id, timer.to_signal())

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def retry_compensation(self, correlation_id: str, step_name: str) -> EvaluationResult:
        """Clear ``stuck`` and re-dispatch a compensation with a fresh attempt budget."""
        return await self._run(correlation_id, CompensationRetrySignal(step_name, force=True))

    async def skip_compensation(self, correlation_id: str, step_name: str) -> EvaluationResult:
        """Give up on a step's compensation and keep unwinding."""
        return await self._run(correlation_id, SkipCompensationSignal(step_name))

    async def redispatch(self, correlation_id: str, older_than: datetime) -> list[Command]:
        """Re-send commands still awaiting an answer that were dispatched before *older_than*.

        Uses the original delivery ids and idempotency keys; the stored
        state is not modified.  Returns the commands that were sent.
        """
        instance = await self._store.load(correlation_id)
        definition = self._registry.get(instance.saga_name)
        if definition is None:
            logger.warning("Cannot re-dispatch saga %s: unknown saga '%s'", correlation_id, instance.saga_name)
            return []
        commands = transition.inflight_commands(definition, instance, older_than)
        sent: list[Command] = []
        for command in commands:
            if await self._send(command):
                sent.append(command)
        if sent:
            logger.info("Re-dispatched %d command(s) for saga %s", len(sent), correlation_id)
        return sent

    # ------------------------------------------------------------------
    # Evaluation pass
    # ------------------------------------------------------------------

    async def _run(
        self,
        correlation_id: str,
        signal: Signal,
        step_name: str | None = None,
        delivery_id: str | None = None,
    ) -> EvaluationResult:
        with self._logging.saga_context(correlation_id):
            if step_name is not None and delivery_id is not None:
                if self._cache.contains(correlation_id, step_name, delivery_id):
                    logger.debug("Duplicate delivery %s (cache)", delivery_id)
                    return EvaluationResult(Disposition.DUPLICATE, correlation_id, detail="duplicate delivery")
            try:
                result = await self._cas_loop(correlation_id, signal)
            except SagaNotFoundException:
                logger.info("Signal %s for unknown saga %s ignored", type(signal).__name__, correlation_id)
                return EvaluationResult(Disposition.NOT_FOUND, correlation_id, detail="saga not found")
            except IllegalTransitionException as exc:
                logger.warning("Protocol violation for saga %s: %s", correlation_id, exc)
                return EvaluationResult(Disposition.IGNORED, correlation_id, detail=str(exc))
            except Exception as exc:  # noqa: BLE001
                logger.error("Transient failure evaluating saga %s: %s", correlation_id, exc, exc_info=True)
                return EvaluationResult(Disposition.TRANSIENT_FAILURE, correlation_id, detail=str(exc))

            if step_name is not None and delivery_id is not None and result.disposition in (
                Disposition.APPLIED,
                Disposition.DUPLICATE,
            ):
                self._cache.remember(correlation_id, step_name, delivery_id)
            return result

    async def _cas_loop(self, correlation_id: str, signal: Signal) -> EvaluationResult:
        attempts = max(self._props.cas_max_retries, 1)
        for attempt in range(1, attempts + 1):
            instance = await self._store.load(correlation_id)
            definition = self._registry.get(instance.saga_name)
            if definition is None:
                logger.warning("Saga %s references unknown saga '%s'", correlation_id, instance.saga_name)
                return EvaluationResult(Disposition.IGNORED, correlation_id, instance, "unknown saga definition")

            result = transition.evaluate(definition, instance, signal, self._clock(), self._policy)
            if result.duplicate:
                logger.debug("Duplicate delivery for saga %s", correlation_id)
                return EvaluationResult(Disposition.DUPLICATE, correlation_id, instance, result.ignored)
            if result.instance is None:
                logger.debug("Signal %s ignored: %s", type(signal).__name__, result.ignored)
                return EvaluationResult(Disposition.IGNORED, correlation_id, instance, result.ignored)

            try:
                stored = await self._store.compare_and_swap(correlation_id, instance.version, result.instance)
            except VersionConflictException:
                logger.debug("Version conflict on saga %s (attempt %d/%d)", correlation_id, attempt, attempts)
                if attempt < attempts:
                    await self._sleep(self._props.cas_backoff_ms * (2 ** (attempt - 1)) / 1000)
                continue

            await self._apply_effects(definition, stored, result)
            return EvaluationResult(Disposition.APPLIED, correlation_id, stored)

        logger.warning("Giving up on saga %s after %d version conflicts", correlation_id, attempts)
        return EvaluationResult(
            Disposition.TRANSIENT_FAILURE, correlation_id, detail="version conflict retries exhausted"
        )

    async def _classify(self, event: StepEvent) -> tuple[EventKind, Outcome] | EvaluationResult:
        cid = event.correlation_id
        try:
            instance = await self._store.load(cid)
        except SagaNotFoundException:
            return EvaluationResult(Disposition.NOT_FOUND, cid, detail="saga not found")
        except Exception as exc:  # noqa: BLE001
            logger.error("Transient failure loading saga %s: %s", cid, exc, exc_info=True)
            return EvaluationResult(Disposition.TRANSIENT_FAILURE, cid, detail=str(exc))
        definition = self._registry.get(instance.saga_name)
        classified = definition.classify(event.step_name, event.event_type or "") if definition else None
        if classified is None:
            logger.warning("Unknown event type %r for step '%s' of saga %s", event.event_type, event.step_name, cid)
            return EvaluationResult(Disposition.IGNORED, cid, instance, f"unknown event type {event.event_type!r}")
        return classified

    # ------------------------------------------------------------------
    # Effects (only after a successful write)
    # ------------------------------------------------------------------

    async def _apply_effects(self, definition: SagaDefinition, instance: SagaInstance, result: Transition) -> None:
        cid = instance.correlation_id
        if self._scheduler is not None:
            for step_name in result.settled_steps:
                self._scheduler.cancel(cid, step_name)
            if instance.is_terminal:
                self._scheduler.cancel_saga(cid)
            for timer in result.timers:
                self._scheduler.schedule(timer)

        for command in result.commands:
            await self._send(command)

        for outcome in result.outcomes:
            try:
                await self._channel.publish_outcome(outcome)
            except RetryExhaustedException as exc:
                logger.error("Could not publish %s for saga %s: %s", outcome.type, cid, exc)

        for note in result.notes:
            await self._emit(definition.name, cid, instance, note)

    async def _send(self, command: Command) -> bool:
        try:
            await self._channel.send_command(command)
        except RetryExhaustedException as exc:
            logger.error(
                "Could not dispatch %s for step '%s' of saga %s, reconciliation will re-send it: %s",
                command.command_type,
                command.step_name,
                command.correlation_id,
                exc,
            )
            return False
        return True

    async def _emit(self, name: str, cid: str, instance: SagaInstance, note: LifecycleNote) -> None:
        if note.event == "stuck":
            logger.critical(
                "Saga %s is stuck: compensation of step '%s' needs operator attention (%s)",
                cid,
                note.step_name,
                note.detail,
            )
        elif note.event == "compensation_skipped":
            logger.info("Compensation of step '%s' skipped for saga %s (%s)", note.step_name, cid, note.detail)

        port = self._events_port
        if port is None:
            return
        step = note.step_name or ""
        try:
            match note.event:
                case "started":
                    await port.on_start(name, cid)
                case "step_completed":
                    await port.on_step_completed(name, cid, step)
                case "step_failed":
                    await port.on_step_failed(name, cid, step, note.detail)
                case "compensated":
                    await port.on_compensated(name, cid, step, None)
                case "compensation_failed":
                    await port.on_compensated(name, cid, step, note.detail or "failed")
                case "stuck":
                    await port.on_stuck(name, cid, step, note.detail)
                case "completed":
                    await port.on_completed(name, cid, instance.status)
        except Exception:  # noqa: BLE001
            logger.error("Events port failed on %s for saga %s", note.event, cid, exc_info=True)


def _kind_from_delivery_id(delivery_id: str) -> EventKind:
    return EventKind.COMPENSATION if "/compensate/" in delivery_id else EventKind.FORWARD
