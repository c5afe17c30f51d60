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
"""Broker record exchanged between the orchestrator and its participants."""

from __future__ import annotations

from dataclasses import dataclass, field

DELIVERY_ID_HEADER = "delivery-id"


@dataclass(frozen=True)
class Message:
    """A broker record: opaque bytes plus routing metadata.

    ``key`` carries the saga correlation id so that partitioned brokers keep
    every record of one saga in order; ``headers`` carry routing hints such
    as the command type and delivery id.
    """

    topic: str
    value: bytes
    key: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def correlation_id(self) -> str | None:
        return self.key.decode("utf-8", errors="replace") if self.key else None

    @property
    def delivery_id(self) -> str | None:
        return self.headers.get(DELIVERY_ID_HEADER)
