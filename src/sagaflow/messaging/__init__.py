"""sagaflow messaging — message broker abstraction with pluggable adapters."""

from sagaflow.messaging.adapters.memory import InMemoryMessageBroker
from sagaflow.messaging.ports.outbound import MessageBrokerPort, MessageHandler
from sagaflow.messaging.types import Message

__all__ = [
    "InMemoryMessageBroker",
    "Message",
    "MessageBrokerPort",
    "MessageHandler",
]
