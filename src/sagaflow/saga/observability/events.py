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
"""Observability adapters for saga lifecycle events.

* :class:`LoggerEventsAdapter` -- writes one structured log line per
  lifecycle event.
* :class:`CompositeEventsAdapter` -- fans each event out to child adapters,
  absorbing individual adapter failures so one broken sink never silences
  the others.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import structlog

from sagaflow.saga.observability.port import SagaEventsPort
from sagaflow.saga.types import SagaStatus

_logger = logging.getLogger("sagaflow.saga.events")


# ---------------------------------------------------------------------------
# LoggerEventsAdapter
# ---------------------------------------------------------------------------


class LoggerEventsAdapter:
    """Logs saga lifecycle events through the ``sagaflow.saga.events`` logger.

    Progress logs at INFO, failures and compensation errors at WARNING and a
    stuck saga at CRITICAL.
    """

    def __init__(self) -> None:
        self._log = structlog.stdlib.get_logger("sagaflow.saga.events")

    async def on_start(self, name: str, correlation_id: str) -> None:
        self._log.info("saga_started", saga=name, correlation_id=correlation_id)

    async def on_step_completed(self, name: str, correlation_id: str, step_name: str) -> None:
        self._log.info("step_completed", saga=name, correlation_id=correlation_id, step=step_name)

    async def on_step_failed(self, name: str, correlation_id: str, step_name: str, reason: str | None) -> None:
        self._log.warning("step_failed", saga=name, correlation_id=correlation_id, step=step_name, reason=reason)

    async def on_compensated(
        self, name: str, correlation_id: str, step_name: str, error: str | None
    ) -> None:
        if error is None:
            self._log.info("step_compensated", saga=name, correlation_id=correlation_id, step=step_name)
        else:
            self._log.warning(
                "compensation_failed", saga=name, correlation_id=correlation_id, step=step_name, error=error
            )

    async def on_stuck(self, name: str, correlation_id: str, step_name: str, detail: str | None) -> None:
        self._log.critical("saga_stuck", saga=name, correlation_id=correlation_id, step=step_name, detail=detail)

    async def on_completed(self, name: str, correlation_id: str, status: SagaStatus) -> None:
        self._log.info("saga_completed", saga=name, correlation_id=correlation_id, status=str(status))


# ---------------------------------------------------------------------------
# CompositeEventsAdapter
# ---------------------------------------------------------------------------


class CompositeEventsAdapter:
    """Broadcasts saga events to multiple :class:`SagaEventsPort` adapters.

    If an individual adapter raises an exception, the error is logged and
    the remaining adapters still receive the event.
    """

    def __init__(self, *adapters: SagaEventsPort) -> None:
        self._adapters: Sequence[SagaEventsPort] = adapters

    async def _broadcast(self, method: str, *args: object) -> None:
        for adapter in self._adapters:
            try:
                await getattr(adapter, method)(*args)
            except Exception:
                _logger.error("Events adapter %r failed on %s", adapter, method, exc_info=True)

    async def on_start(self, name: str, correlation_id: str) -> None:
        await self._broadcast("on_start", name, correlation_id)

    async def on_step_completed(self, name: str, correlation_id: str, step_name: str) -> None:
        await self._broadcast("on_step_completed", name, correlation_id, step_name)

    async def on_step_failed(self, name: str, correlation_id: str, step_name: str, reason: str | None) -> None:
        await self._broadcast("on_step_failed", name, correlation_id, step_name, reason)

    async def on_compensated(
        self, name: str, correlation_id: str, step_name: str, error: str | None
    ) -> None:
        await self._broadcast("on_compensated", name, correlation_id, step_name, error)

    async def on_stuck(self, name: str, correlation_id: str, step_name: str, detail: str | None) -> None:
        await self._broadcast("on_stuck", name, correlation_id, step_name, detail)

    async def on_completed(self, name: str, correlation_id: str, status: SagaStatus) -> None:
        await self._broadcast("on_completed", name, correlation_id, status)
