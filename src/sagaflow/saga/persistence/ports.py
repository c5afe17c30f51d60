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
"""Outbound port for saga instance persistence.

The store is the single source of truth for saga state and the only place
where concurrent evaluations of the same saga are serialised: every write
after creation is a compare-and-swap on ``version``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sagaflow.saga.core.instance import SagaInstance


@runtime_checkable
class SagaStatePort(Protocol):
    """Port for storing and conditionally updating saga instances."""

    async def create(self, instance: SagaInstance) -> SagaInstance:
        """Insert a new instance (``version`` 0).

        Raises:
            DuplicateKeyException: If the correlation id already exists.
        """
        ...

    async def load(self, correlation_id: str) -> SagaInstance:
        """Return a private copy of the stored instance.

        Raises:
            SagaNotFoundException: If no instance is stored under the id.
        """
        ...

    async def compare_and_swap(
        self, correlation_id: str, expected_version: int, new_instance: SagaInstance
    ) -> SagaInstance:
        """Replace the stored record if its version still equals *expected_version*.

        Returns the stored instance with ``version = expected_version + 1``.

        Raises:
            SagaNotFoundException: If no instance is stored under the id.
            VersionConflictException: If the stored version differs.
        """
        ...

    async def find_active(self) -> list[SagaInstance]:
        """Return every RUNNING or COMPENSATING instance."""
        ...

    async def find_stuck(self) -> list[SagaInstance]:
        """Return every instance flagged ``stuck``."""
        ...

    async def is_healthy(self) -> bool:
        """Return ``True`` if the underlying storage backend is reachable."""
        ...
