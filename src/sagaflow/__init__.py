"""sagaflow — message-driven saga orchestration with durable, versioned state."""

__version__ = "0.1.0"
