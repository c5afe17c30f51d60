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
"""JSON wire codec for saga commands, participant events and saga outcomes.

Field names travel in camelCase (``correlationId``, ``stepName`` ...).
Inbound payloads are validated with pydantic; anything malformed raises
:class:`ValidationException` and is discarded by the listener.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from sagaflow.kernel.exceptions import ValidationException
from sagaflow.saga.core.messages import Command, SagaOutcome, StepEvent
from sagaflow.saga.types import EventKind, Outcome


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CommandMessage(_WireModel):
    correlation_id: str
    saga_name: str
    step_name: str
    delivery_id: str
    idempotency_key: str
    command_type: str
    kind: EventKind
    attempt: int = 1
    payload: dict[str, Any] = {}


class EventMessage(_WireModel):
    correlation_id: str
    step_name: str
    delivery_id: str
    outcome: Outcome | None = None
    kind: EventKind | None = None
    event_type: str | None = None
    payload: dict[str, Any] = {}
    reason: str | None = None

    @field_validator("outcome", "kind", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("payload", mode="before")
    @classmethod
    def _none_payload(cls, value: Any) -> Any:
        return {} if value is None else value


class OutcomeMessage(_WireModel):
    type: str
    correlation_id: str
    saga_name: str
    reason: str | None = None


def _validate_json(model: type[_WireModel], raw: bytes | str) -> Any:
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
        detail = "; ".join(f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}" for e in errors)
        raise ValidationException(
            f"Malformed {model.__name__}: {detail}",
            code="MALFORMED_MESSAGE",
            context={"errors": errors},
        ) from exc


def _dump(model: _WireModel) -> bytes:
    return model.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


# -- commands ------------------------------------------------------------------


def encode_command(command: Command) -> bytes:
    return _dump(
        CommandMessage(
            correlation_id=command.correlation_id,
            saga_name=command.saga_name,
            step_name=command.step_name,
            delivery_id=command.delivery_id,
            idempotency_key=command.idempotency_key,
            command_type=command.command_type,
            kind=command.kind,
            attempt=command.attempt,
            payload=command.payload,
        )
    )


def decode_command(raw: bytes | str) -> CommandMessage:
    """Parse a command as a participant would receive it."""
    return _validate_json(CommandMessage, raw)


# -- events --------------------------------------------------------------------


def encode_event(event: StepEvent) -> bytes:
    return _dump(
        EventMessage(
            correlation_id=event.correlation_id,
            step_name=event.step_name,
            delivery_id=event.delivery_id,
            outcome=event.outcome,
            kind=event.kind,
            event_type=event.event_type,
            payload=event.payload,
            reason=event.reason,
        )
    )


def decode_event(raw: bytes | str) -> StepEvent:
    """Parse and validate an inbound participant event.

    Raises:
        ValidationException: If the payload is not valid JSON, misses a
            required field or names neither an outcome nor an event type.
    """
    msg: EventMessage = _validate_json(EventMessage, raw)
    if msg.outcome is None and not msg.event_type:
        raise ValidationException(
            "Event carries neither 'outcome' nor 'eventType'",
            code="MALFORMED_MESSAGE",
            context={"correlation_id": msg.correlation_id, "step_name": msg.step_name},
        )
    return StepEvent(
        correlation_id=msg.correlation_id,
        step_name=msg.step_name,
        delivery_id=msg.delivery_id,
        outcome=msg.outcome,
        kind=msg.kind,
        event_type=msg.event_type,
        payload=msg.payload,
        reason=msg.reason,
    )


# -- outcomes ------------------------------------------------------------------


def encode_outcome(outcome: SagaOutcome) -> bytes:
    return _dump(
        OutcomeMessage(
            type=outcome.type,
            correlation_id=outcome.correlation_id,
            saga_name=outcome.saga_name,
            reason=outcome.reason,
        )
    )


def decode_outcome(raw: bytes | str) -> SagaOutcome:
    msg: OutcomeMessage = _validate_json(OutcomeMessage, raw)
    return SagaOutcome(type=msg.type, correlation_id=msg.correlation_id, saga_name=msg.saga_name, reason=msg.reason)
