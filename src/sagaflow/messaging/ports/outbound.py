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
"""Outbound port for the message broker carrying saga traffic."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any, Protocol, runtime_checkable

from sagaflow.messaging.types import Message

MessageHandler = Callable[[Message], Coroutine[Any, Any, None]]


@runtime_checkable
class MessageBrokerPort(Protocol):
    """Transport used for commands, participant events and saga outcomes.

    Adapters deliver at-least-once and only preserve order per key within
    one topic, so handlers must tolerate duplicates and reordering.
    """

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Publish one record; returns once the broker has accepted it."""
        ...

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        group: str | None = None,
    ) -> None:
        """Register *handler* for *topic*.

        Subscribers sharing a *group* compete for records; a ``None`` group
        receives every record.  A handler that raises leaves the record
        unacknowledged so the broker delivers it again.
        """
        ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...
