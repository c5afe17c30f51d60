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
"""Tests for InMemoryMessageBroker and the Message record."""

from __future__ import annotations

import pytest

from sagaflow.messaging.adapters.memory import InMemoryMessageBroker
from sagaflow.messaging.ports.outbound import MessageBrokerPort
from sagaflow.messaging.types import Message

# ── Helpers ──────────────────────────────────────────────────


def _collector() -> tuple[list[Message], object]:
    received: list[Message] = []

    async def handler(msg: Message) -> None:
        received.append(msg)

    return received, handler


@pytest.fixture
async def broker() -> InMemoryMessageBroker:
    b = InMemoryMessageBroker()
    await b.start()
    return b


# ── Tests ────────────────────────────────────────────────────


class TestMessage:
    def test_correlation_id_from_key(self) -> None:
        assert Message(topic="t", value=b"", key=b"saga-1").correlation_id == "saga-1"
        assert Message(topic="t", value=b"").correlation_id is None

    def test_delivery_id_from_headers(self) -> None:
        msg = Message(topic="t", value=b"", headers={"delivery-id": "saga-1/a/forward"})
        assert msg.delivery_id == "saga-1/a/forward"


class TestInMemoryMessageBroker:
    def test_protocol_compliance(self) -> None:
        assert isinstance(InMemoryMessageBroker(), MessageBrokerPort)

    async def test_publish_and_subscribe(self, broker) -> None:
        received, handler = _collector()

        await broker.subscribe("saga.commands.payment", handler)
        await broker.publish("saga.commands.payment", b"cmd", key=b"saga-1", headers={"delivery-id": "d-1"})

        assert len(received) == 1
        assert received[0].value == b"cmd"
        assert received[0].key == b"saga-1"
        assert received[0].headers == {"delivery-id": "d-1"}

    async def test_every_ungrouped_subscriber_receives(self, broker) -> None:
        received_a, handler_a = _collector()
        received_b, handler_b = _collector()

        await broker.subscribe("saga.events", handler_a)
        await broker.subscribe("saga.events", handler_b)
        await broker.publish("saga.events", b"e")

        assert len(received_a) == len(received_b) == 1

    async def test_group_members_compete_round_robin(self, broker) -> None:
        received_a, handler_a = _collector()
        received_b, handler_b = _collector()

        await broker.subscribe("saga.events", handler_a, group="orchestrator")
        await broker.subscribe("saga.events", handler_b, group="orchestrator")
        for i in range(4):
            await broker.publish("saga.events", str(i).encode())

        assert [m.value for m in received_a] == [b"0", b"2"]
        assert [m.value for m in received_b] == [b"1", b"3"]

    async def test_no_cross_topic_delivery(self, broker) -> None:
        received, handler = _collector()

        await broker.subscribe("topic-a", handler)
        await broker.publish("topic-b", b"data")

        assert received == []

    async def test_published_log_per_topic(self, broker) -> None:
        await broker.publish("a", b"1")
        await broker.publish("b", b"2")
        await broker.publish("a", b"3")

        assert [m.value for m in broker.messages("a")] == [b"1", b"3"]
        assert len(broker.published) == 3

    async def test_publish_requires_start(self) -> None:
        broker = InMemoryMessageBroker()
        with pytest.raises(RuntimeError):
            await broker.publish("t", b"v")

    async def test_stop(self, broker) -> None:
        await broker.stop()
        with pytest.raises(RuntimeError):
            await broker.publish("t", b"v")
