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
"""Inbound listener: participant events from the broker into the engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sagaflow.kernel.exceptions import ServiceUnavailableException, ValidationException
from sagaflow.messaging.types import Message
from sagaflow.saga.channel.channel import SagaMessageChannel
from sagaflow.saga.channel.codec import decode_event
from sagaflow.saga.types import Disposition

if TYPE_CHECKING:
    from sagaflow.saga.engine.saga_engine import SagaEngine

logger = logging.getLogger(__name__)


class SagaEventListener:
    """Decodes participant events and hands them to :meth:`SagaEngine.on_event`.

    Malformed messages are protocol violations: they are logged and dropped
    so a poison message never blocks the queue.  An event the engine could
    not apply (store down, version conflicts exhausted) raises
    :class:`ServiceUnavailableException` instead, so the broker leaves it
    unacknowledged and delivers it again.
    """

    def __init__(self, engine: SagaEngine, channel: SagaMessageChannel) -> None:
        self._engine = engine
        self._channel = channel
        self._subscribed = False

    async def start(self) -> None:
        if self._subscribed:
            return
        await self._channel.subscribe_events(self.handle_message)
        self._subscribed = True
        logger.info("Listening for saga events on %s", self._channel.event_topic)

    async def handle_message(self, message: Message) -> None:
        try:
            event = decode_event(message.value)
        except ValidationException as exc:
            logger.warning(
                "Discarding malformed saga event from %s (key=%s, delivery-id=%s): %s",
                message.topic,
                message.correlation_id,
                message.delivery_id,
                exc,
            )
            return
        result = await self._engine.on_event(event)
        if result.disposition is Disposition.TRANSIENT_FAILURE:
            logger.warning(
                "Event %s for saga %s not applied (%s); leaving it for redelivery",
                event.delivery_id,
                event.correlation_id,
                result.detail,
            )
            raise ServiceUnavailableException(
                f"Event {event.delivery_id} for saga {event.correlation_id} was not applied: {result.detail}",
                code="EVENT_NOT_APPLIED",
                context={"correlation_id": event.correlation_id, "delivery_id": event.delivery_id},
            )
