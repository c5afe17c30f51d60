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
"""Saga message channel: the orchestrator's view of the broker.

Commands go to ``<command-topic-prefix>.<channel>``, participant events
arrive on ``event-topic`` and final outcomes leave on ``outcome-topic``.
Every record is keyed by the correlation id so partitioned brokers keep
the traffic of one saga together.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sagaflow.kernel.exceptions import RetryExhaustedException
from sagaflow.messaging.ports.outbound import MessageBrokerPort, MessageHandler
from sagaflow.messaging.types import DELIVERY_ID_HEADER
from sagaflow.saga.channel.codec import encode_command, encode_event, encode_outcome
from sagaflow.saga.config.properties import MessagingProperties
from sagaflow.saga.core.messages import Command, SagaOutcome, StepEvent

logger = logging.getLogger(__name__)


class SagaMessageChannel:
    """Publishes saga traffic through a :class:`MessageBrokerPort` with retries.

    Args:
        broker: The underlying broker adapter.
        properties: Topic names and publish retry settings.
        sleep: Awaitable used between attempts (injectable for tests).
    """

    def __init__(
        self,
        broker: MessageBrokerPort,
        properties: MessagingProperties | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._props = properties or MessagingProperties()
        self._sleep = sleep

    @property
    def broker(self) -> MessageBrokerPort:
        return self._broker

    @property
    def event_topic(self) -> str:
        return self._props.event_topic

    @property
    def outcome_topic(self) -> str:
        return self._props.outcome_topic

    def command_topic(self, channel: str) -> str:
        return f"{self._props.command_topic_prefix}.{channel}"

    # -- outbound -----------------------------------------------------------

    async def send_command(self, command: Command) -> None:
        """Publish *command* to its participant's command topic.

        Raises:
            RetryExhaustedException: If every publish attempt failed.
        """
        await self._publish(
            self.command_topic(command.channel),
            encode_command(command),
            key=command.correlation_id,
            headers={
                "command-type": command.command_type,
                DELIVERY_ID_HEADER: command.delivery_id,
                "idempotency-key": command.idempotency_key,
            },
        )

    async def publish_outcome(self, outcome: SagaOutcome) -> None:
        """Publish a ``SagaCompleted`` / ``SagaFailed`` / ``SagaAborted`` event."""
        await self._publish(
            self.outcome_topic,
            encode_outcome(outcome),
            key=outcome.correlation_id,
            headers={"type": outcome.type},
        )

    async def publish_event(self, event: StepEvent) -> None:
        """Publish a participant event (used by participants built on this package)."""
        await self._publish(self.event_topic, encode_event(event), key=event.correlation_id)

    # -- inbound ------------------------------------------------------------

    async def subscribe_events(self, handler: MessageHandler) -> None:
        """Subscribe *handler* to participant events as a competing consumer."""
        await self._broker.subscribe(self.event_topic, handler, group=self._props.consumer_group)

    async def subscribe_commands(self, channel: str, handler: MessageHandler, group: str | None = None) -> None:
        """Subscribe a participant *handler* to the command topic of *channel*."""
        await self._broker.subscribe(self.command_topic(channel), handler, group=group)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        attempts = max(self._props.publish_max_attempts, 1)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._broker.publish(topic, value, key=key.encode("utf-8"), headers=headers)
                return
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("Publish to %s failed (attempt %d/%d): %s", topic, attempt, attempts, exc)
                if attempt < attempts:
                    await self._sleep(self._props.publish_backoff_ms * (2 ** (attempt - 1)) / 1000)
        raise RetryExhaustedException(
            f"Publishing to '{topic}' failed after {attempts} attempt(s)",
            code="PUBLISH_RETRY_EXHAUSTED",
            context={"topic": topic, "key": key},
        ) from last_error
