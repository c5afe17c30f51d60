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
"""Prometheus metrics for saga lifecycle events."""

from __future__ import annotations

import functools
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge

from sagaflow.saga.types import SagaStatus


class MetricsRegistry:
    """Registry for orchestrator metrics.

    Wraps prometheus_client so each metric name is registered only once.
    Pass a dedicated :class:`CollectorRegistry` to keep metrics out of the
    process-wide default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}

    def _kwargs(self) -> dict[str, Any]:
        return {"registry": self._registry} if self._registry is not None else {}

    def counter(self, name: str, description: str, labels: list[str] | None = None) -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = Counter(name, description, labels or [], **self._kwargs())
        return self._counters[name]

    def gauge(self, name: str, description: str, labels: list[str] | None = None) -> Gauge:
        """Get or create a gauge metric."""
        if name not in self._gauges:
            self._gauges[name] = Gauge(name, description, labels or [], **self._kwargs())
        return self._gauges[name]


@functools.cache
def default_registry() -> MetricsRegistry:
    """Process-wide registry backed by the prometheus_client default collector."""
    return MetricsRegistry()


class MetricsEventsAdapter:
    """Counts saga lifecycle events.

    ``sagaflow_sagas_active`` tracks sagas started and not yet terminal in
    this process only; sagas rehydrated after a restart are not counted.
    """

    def __init__(self, registry: MetricsRegistry) -> None:
        self._started = registry.counter("sagaflow_sagas_started", "Sagas started", ["saga"])
        self._finished = registry.counter("sagaflow_sagas_finished", "Sagas finished", ["saga", "status"])
        self._active = registry.gauge("sagaflow_sagas_active", "Sagas currently running", ["saga"])
        self._steps = registry.counter("sagaflow_steps", "Step outcomes", ["saga", "step", "outcome"])
        self._compensations = registry.counter(
            "sagaflow_compensations", "Compensation outcomes", ["saga", "step", "outcome"]
        )
        self._stuck = registry.counter("sagaflow_sagas_stuck", "Sagas flagged stuck", ["saga"])

    async def on_start(self, name: str, correlation_id: str) -> None:
        self._started.labels(saga=name).inc()
        self._active.labels(saga=name).inc()

    async def on_step_completed(self, name: str, correlation_id: str, step_name: str) -> None:
        self._steps.labels(saga=name, step=step_name, outcome="success").inc()

    async def on_step_failed(self, name: str, correlation_id: str, step_name: str, reason: str | None) -> None:
        self._steps.labels(saga=name, step=step_name, outcome="failure").inc()

    async def on_compensated(
        self, name: str, correlation_id: str, step_name: str, error: str | None
    ) -> None:
        outcome = "success" if error is None else "failure"
        self._compensations.labels(saga=name, step=step_name, outcome=outcome).inc()

    async def on_stuck(self, name: str, correlation_id: str, step_name: str, detail: str | None) -> None:
        self._stuck.labels(saga=name).inc()

    async def on_completed(self, name: str, correlation_id: str, status: SagaStatus) -> None:
        self._finished.labels(saga=name, status=str(status)).inc()
        self._active.labels(saga=name).dec()
