"""sagaflow logging — hexagonal logging port and the structlog adapter."""

from sagaflow.logging.port import LoggingPort
from sagaflow.logging.structlog_adapter import StructlogAdapter

__all__ = ["LoggingPort", "StructlogAdapter"]
