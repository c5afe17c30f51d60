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
"""Outbound port for saga lifecycle events."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sagaflow.saga.types import SagaStatus


@runtime_checkable
class SagaEventsPort(Protocol):
    """Port for emitting lifecycle events from the saga engine.

    Adapters integrate with observability back-ends (metrics, tracing, audit
    logs) without coupling the engine to any specific vendor.  Events are
    emitted only after the state change that caused them is persisted.
    """

    async def on_start(self, name: str, correlation_id: str) -> None:
        """Fired when a saga instance has been created and phase 0 dispatched."""
        ...

    async def on_step_completed(self, name: str, correlation_id: str, step_name: str) -> None:
        """Fired when a participant reports success for a forward command."""
        ...

    async def on_step_failed(self, name: str, correlation_id: str, step_name: str, reason: str | None) -> None:
        """Fired when a step fails, times out or is aborted."""
        ...

    async def on_compensated(
        self, name: str, correlation_id: str, step_name: str, error: str | None
    ) -> None:
        """Fired after a compensation outcome.

        *error* is ``None`` when the compensation itself succeeded.
        """
        ...

    async def on_stuck(self, name: str, correlation_id: str, step_name: str, detail: str | None) -> None:
        """Fired when a compensation exhausted its attempts and needs an operator."""
        ...

    async def on_completed(self, name: str, correlation_id: str, status: SagaStatus) -> None:
        """Fired when the saga reaches a terminal status."""
        ...
