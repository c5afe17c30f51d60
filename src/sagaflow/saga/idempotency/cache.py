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
"""Bounded in-memory fast path for inbound deduplication.

The authoritative ledger is :attr:`SagaInstance.processed_deliveries`,
which commits together with the state change.  This cache only saves a
store round-trip for redeliveries that arrive shortly after the original;
a miss here never means the delivery is new.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable

from sagaflow.saga.types import DeliveryStatus


class IdempotencyCache:
    """LRU set of ``(correlation_id, step_name, delivery_id)`` with a TTL.

    Args:
        max_entries: Oldest entries are evicted beyond this size.
        ttl_seconds: Entries older than this are treated as absent.
        clock: Monotonic seconds source (injectable for tests).
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max(max_entries, 1)
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str, str], float] = OrderedDict()

    def contains(self, correlation_id: str, step_name: str, delivery_id: str) -> bool:
        key = (correlation_id, step_name, delivery_id)
        stored_at = self._entries.get(key)
        if stored_at is None:
            return False
        if self._clock() - stored_at > self._ttl:
            del self._entries[key]
            return False
        return True

    def remember(self, correlation_id: str, step_name: str, delivery_id: str) -> None:
        key = (correlation_id, step_name, delivery_id)
        self._entries[key] = self._clock()
        self._entries.move_to_end(key)
        self._evict()

    def mark_if_new(self, correlation_id: str, step_name: str, delivery_id: str) -> DeliveryStatus:
        """Record the delivery, returning ``DUPLICATE`` if it was already cached."""
        if self.contains(correlation_id, step_name, delivery_id):
            return DeliveryStatus.DUPLICATE
        self.remember(correlation_id, step_name, delivery_id)
        return DeliveryStatus.FRESH

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        while self._entries:
            key, stored_at = next(iter(self._entries.items()))
            if len(self._entries) > self._max_entries or now - stored_at > self._ttl:
                del self._entries[key]
            else:
                break
