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
"""In-memory implementation of :class:`SagaStatePort`.

Stores serialised instance dicts keyed by correlation id.  An
``asyncio.Lock`` makes compare-and-swap atomic within one event loop, so
this adapter is only suitable for tests and single-process deployments.
**All state is lost on process restart.**
"""

from __future__ import annotations

import asyncio
from typing import Any

from sagaflow.kernel.exceptions import (
    DuplicateKeyException,
    SagaNotFoundException,
    VersionConflictException,
)
from sagaflow.saga.core.instance import SagaInstance
from sagaflow.saga.types import SagaStatus


class InMemorySagaStateStore:
    """In-memory :class:`SagaStatePort`.  State lost on restart."""

    def __init__(self) -> None:
        self._store: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # -- create / load ------------------------------------------------------

    async def create(self, instance: SagaInstance) -> SagaInstance:
        async with self._lock:
            if instance.correlation_id in self._store:
                raise DuplicateKeyException(
                    f"Saga '{instance.correlation_id}' already exists",
                    code="DUPLICATE_SAGA_INSTANCE",
                    context={"correlation_id": instance.correlation_id},
                )
            data = instance.to_dict()
            data["version"] = 0
            self._store[instance.correlation_id] = data
            return SagaInstance.from_dict(data)

    async def load(self, correlation_id: str) -> SagaInstance:
        data = self._store.get(correlation_id)
        if data is None:
            raise SagaNotFoundException(
                f"Saga '{correlation_id}' not found",
                code="SAGA_NOT_FOUND",
                context={"correlation_id": correlation_id},
            )
        return SagaInstance.from_dict(data)

    # -- conditional update -------------------------------------------------

    async def compare_and_swap(
        self, correlation_id: str, expected_version: int, new_instance: SagaInstance
    ) -> SagaInstance:
        async with self._lock:
            current = self._store.get(correlation_id)
            if current is None:
                raise SagaNotFoundException(
                    f"Saga '{correlation_id}' not found",
                    code="SAGA_NOT_FOUND",
                    context={"correlation_id": correlation_id},
                )
            if current["version"] != expected_version:
                raise VersionConflictException(
                    f"Saga '{correlation_id}' is at version {current['version']}, expected {expected_version}",
                    code="VERSION_CONFLICT",
                    context={
                        "correlation_id": correlation_id,
                        "expected_version": expected_version,
                        "actual_version": current["version"],
                    },
                )
            data = new_instance.to_dict()
            data["version"] = expected_version + 1
            self._store[correlation_id] = data
            return SagaInstance.from_dict(data)

    # -- queries ------------------------------------------------------------

    async def find_active(self) -> list[SagaInstance]:
        active = (SagaStatus.RUNNING.value, SagaStatus.COMPENSATING.value)
        return [SagaInstance.from_dict(d) for d in self._store.values() if d["status"] in active]

    async def find_stuck(self) -> list[SagaInstance]:
        return [SagaInstance.from_dict(d) for d in self._store.values() if d.get("stuck")]

    async def is_healthy(self) -> bool:
        """In-memory store is always healthy."""
        return True

    def __len__(self) -> int:
        return len(self._store)
