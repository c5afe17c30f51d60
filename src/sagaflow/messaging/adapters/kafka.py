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
"""Kafka message broker adapter — wraps aiokafka.

Offsets are committed manually, and only after every handler for a record
has returned.  When a handler raises, the consumer seeks back to that
record so it is delivered again (at-least-once).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sagaflow.messaging.ports.outbound import MessageHandler
from sagaflow.messaging.types import Message

logger = logging.getLogger(__name__)


class KafkaAdapter:
    """MessageBrokerPort implementation backed by Apache Kafka via aiokafka.

    Requires aiokafka to be installed (``pip install sagaflow[kafka]``).
    Publishers pass the correlation id as *key* so that every record of one
    saga lands on the same partition.

    Args:
        bootstrap_servers: Comma-separated ``host:port`` list.
        retry_delay_seconds: Pause before re-reading a record whose handler failed.
    """

    def __init__(self, bootstrap_servers: str = "localhost:9092", retry_delay_seconds: float = 1.0) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._retry_delay = retry_delay_seconds
        self._producer: Any = None
        self._consumers: list[Any] = []
        self._subscriptions: dict[tuple[str, str | None], list[MessageHandler]] = {}
        self._consumer_tasks: list[asyncio.Task[None]] = []

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if self._producer is None:
            raise RuntimeError("Kafka producer is not started")
        kafka_headers = [(k, v.encode()) for k, v in headers.items()] if headers else None
        await self._producer.send_and_wait(topic, value=value, key=key, headers=kafka_headers)

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        group: str | None = None,
    ) -> None:
        """Register *handler*; after :meth:`start` a new ``(topic, group)`` gets its consumer at once."""
        handlers = self._subscriptions.get((topic, group))
        if handlers is not None:
            handlers.append(handler)
            return
        self._subscriptions[(topic, group)] = [handler]
        if self._producer is not None:
            await self._start_consumer(topic, group, self._subscriptions[(topic, group)])

    async def start(self) -> None:
        from aiokafka import AIOKafkaProducer  # type: ignore[import-untyped]

        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            acks="all",
            enable_idempotence=True,
        )
        await producer.start()
        self._producer = producer

        for (topic, group), handlers in list(self._subscriptions.items()):
            await self._start_consumer(topic, group, handlers)
        logger.info("Kafka adapter started with %d consumer(s)", len(self._consumers))

    async def _start_consumer(self, topic: str, group: str | None, handlers: list[MessageHandler]) -> None:
        from aiokafka import AIOKafkaConsumer  # type: ignore[import-untyped]

        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self._bootstrap_servers,
            group_id=group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await consumer.start()
        self._consumers.append(consumer)
        task = asyncio.create_task(
            self._consume_loop(consumer, handlers, commit=group is not None),
            name=f"kafka-consume-{topic}",
        )
        self._consumer_tasks.append(task)

    async def stop(self) -> None:
        for task in self._consumer_tasks:
            task.cancel()
        if self._consumer_tasks:
            await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
        self._consumer_tasks.clear()
        for consumer in self._consumers:
            await consumer.stop()
        self._consumers.clear()
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def _consume_loop(self, consumer: Any, handlers: list[MessageHandler], *, commit: bool) -> None:
        from aiokafka import TopicPartition  # type: ignore[import-untyped]

        try:
            async for record in consumer:
                msg = Message(
                    topic=record.topic,
                    value=record.value,
                    key=record.key,
                    headers=_decode_headers(record.headers),
                )
                try:
                    for handler in handlers:
                        await handler(msg)
                except Exception:
                    logger.exception(
                        "Handler failed for %s[%d]@%d; record will be redelivered",
                        record.topic,
                        record.partition,
                        record.offset,
                    )
                    consumer.seek(TopicPartition(record.topic, record.partition), record.offset)
                    await asyncio.sleep(self._retry_delay)
                    continue
                if commit:
                    await consumer.commit()
        except asyncio.CancelledError:
            pass


def _decode_headers(raw: Any) -> dict[str, str]:
    headers: dict[str, str] = {}
    for k, v in raw or ():
        try:
            headers[k] = v.decode()
        except (UnicodeDecodeError, AttributeError):
            headers[k] = v.hex() if isinstance(v, bytes) else str(v)
    return headers
