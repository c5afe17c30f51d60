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
"""Application assembly: builds and runs a complete orchestrator from configuration.

Usage::

    config = Config.from_sources(".")
    orchestrator = SagaOrchestrator.from_config(config, [order_saga], logging_port=StructlogAdapter())
    await orchestrator.start()
    cid = await orchestrator.engine.start_saga("order", {"orderId": "o-1"})
    ...
    await orchestrator.stop()
"""

from __future__ import annotations

import importlib.util
import logging
from collections.abc import Iterable

from sagaflow.core.config import Config
from sagaflow.logging.port import LoggingPort
from sagaflow.messaging.ports.outbound import MessageBrokerPort
from sagaflow.saga.channel.channel import SagaMessageChannel
from sagaflow.saga.channel.listener import SagaEventListener
from sagaflow.saga.config.properties import (
    MessagingProperties,
    PersistenceProperties,
    SagaEngineProperties,
)
from sagaflow.saga.definition.saga_definition import SagaDefinition
from sagaflow.saga.definition.saga_registry import SagaRegistry
from sagaflow.saga.engine.saga_engine import SagaEngine
from sagaflow.saga.engine.transition import TransitionPolicy
from sagaflow.saga.idempotency.cache import IdempotencyCache
from sagaflow.saga.observability.events import CompositeEventsAdapter, LoggerEventsAdapter
from sagaflow.saga.observability.port import SagaEventsPort
from sagaflow.saga.persistence.memory import InMemorySagaStateStore
from sagaflow.saga.persistence.ports import SagaStatePort
from sagaflow.saga.persistence.sqlalchemy import SqlAlchemySagaStateStore
from sagaflow.saga.recovery.reconciler import SagaReconciler
from sagaflow.saga.scheduling.timeout_scheduler import TimeoutScheduler

logger = logging.getLogger(__name__)


def detect_provider() -> str:
    """Detect the best available messaging provider."""
    if importlib.util.find_spec("aiokafka") is not None:
        return "kafka"
    if importlib.util.find_spec("aio_pika") is not None:
        return "rabbitmq"
    return "memory"


def create_broker(props: MessagingProperties) -> MessageBrokerPort:
    """Build the broker adapter selected by ``sagaflow.messaging.provider``."""
    provider = props.provider if props.provider != "auto" else detect_provider()

    if provider == "kafka":
        from sagaflow.messaging.adapters.kafka import KafkaAdapter

        return KafkaAdapter(bootstrap_servers=props.kafka_bootstrap_servers)

    if provider == "rabbitmq":
        from sagaflow.messaging.adapters.rabbitmq import RabbitMQAdapter

        return RabbitMQAdapter(url=props.rabbitmq_url, exchange_name=props.rabbitmq_exchange)

    from sagaflow.messaging.adapters.memory import InMemoryMessageBroker

    return InMemoryMessageBroker()


def create_store(props: PersistenceProperties) -> SagaStatePort:
    """Build the state store selected by ``sagaflow.persistence.provider``."""
    if props.provider == "memory":
        return InMemorySagaStateStore()
    return SqlAlchemySagaStateStore.from_url(props.url, echo=props.echo)


class SagaOrchestrator:
    """A wired orchestrator: registry, store, broker, channel, engine, timers and reconciler."""

    def __init__(
        self,
        registry: SagaRegistry,
        store: SagaStatePort,
        broker: MessageBrokerPort,
        engine_properties: SagaEngineProperties | None = None,
        messaging_properties: MessagingProperties | None = None,
        events_port: SagaEventsPort | None = None,
        logging_port: LoggingPort | None = None,
    ) -> None:
        self.properties = engine_properties or SagaEngineProperties()
        self.registry = registry
        self.store = store
        self.broker = broker
        self.channel = SagaMessageChannel(broker, messaging_properties)
        self.scheduler = TimeoutScheduler(TransitionPolicy.from_properties(self.properties))
        self.engine = SagaEngine(
            registry,
            store,
            self.channel,
            scheduler=self.scheduler,
            events_port=events_port if events_port is not None else self._default_events_port(),
            cache=IdempotencyCache(self.properties.dedup_cache_size, self.properties.dedup_retention_seconds),
            properties=self.properties,
            logging_port=logging_port,
        )
        self.listener = SagaEventListener(self.engine, self.channel)
        self.reconciler = SagaReconciler(store, self.engine, self.properties)
        self._started = False

    def _default_events_port(self) -> SagaEventsPort:
        if not self.properties.metrics_enabled:
            return LoggerEventsAdapter()
        from sagaflow.saga.observability.metrics import MetricsEventsAdapter, default_registry

        return CompositeEventsAdapter(LoggerEventsAdapter(), MetricsEventsAdapter(default_registry()))

    @classmethod
    def from_config(
        cls,
        config: Config,
        definitions: Iterable[SagaDefinition] = (),
        *,
        store: SagaStatePort | None = None,
        broker: MessageBrokerPort | None = None,
        events_port: SagaEventsPort | None = None,
        logging_port: LoggingPort | None = None,
    ) -> SagaOrchestrator:
        """Build an orchestrator from configuration.

        Saga definitions come from *definitions* and from the
        ``sagaflow.sagas`` list in configuration.  *store* and *broker*
        override the configured providers. When *logging_port* is given it
        is configured from the ``sagaflow.logging`` section first.
        """
        if logging_port is not None:
            logging_port.configure(config)

        registry = SagaRegistry(definitions)
        configured = config.get("sagaflow.sagas") or []
        if configured:
            registry.register_from_config(configured)

        messaging = config.bind(MessagingProperties)
        return cls(
            registry,
            store if store is not None else create_store(config.bind(PersistenceProperties)),
            broker if broker is not None else create_broker(messaging),
            engine_properties=config.bind(SagaEngineProperties),
            messaging_properties=messaging,
            events_port=events_port,
            logging_port=logging_port,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Subscribe to events, connect the broker, rehydrate timers and start reconciliation.

        The event subscription is registered before the broker starts so its
        consumer exists from the first poll.
        """
        if self._started:
            return
        if isinstance(self.store, SqlAlchemySagaStateStore):
            await self.store.initialize()
        await self.listener.start()
        await self.broker.start()
        await self.scheduler.start(self.store, self.registry)
        if self.properties.reconciliation_enabled:
            self.reconciler.start(self.properties.reconciliation_interval_seconds)
        self._started = True
        logger.info("Saga orchestrator started with %d saga definition(s)", len(self.registry))

    async def stop(self) -> None:
        if not self._started:
            return
        await self.reconciler.stop()
        await self.scheduler.stop()
        await self.broker.stop()
        if isinstance(self.store, SqlAlchemySagaStateStore):
            await self.store.close()
        self._started = False
        logger.info("Saga orchestrator stopped")
