"""Unified exception hierarchy for sagaflow.

All orchestrator exceptions inherit from SagaFlowException, enabling unified
error handling at the engine boundary.

Categories:
- BusinessException: definition errors, invalid input, illegal transitions,
  store key/version conflicts
- InfrastructureException: store, broker and network failures (transient)
"""

from __future__ import annotations


# =============================================================================
# Base Exception
# =============================================================================


class SagaFlowException(Exception):
    """Base exception for all sagaflow errors.

    Carries an optional error code and context dict for structured error data.

    Args:
        message: Human-readable error description.
        code: Machine-readable error code (e.g. "SAGA_NOT_FOUND").
        context: Arbitrary key-value pairs for error context and debugging.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.context: dict = context if context is not None else {}


# =============================================================================
# Business Exceptions
# =============================================================================


class BusinessException(SagaFlowException):
    """Domain rule violations and business logic errors."""


class ValidationException(BusinessException):
    """Input validation failures."""


class ResourceNotFoundException(BusinessException):
    """Requested resource does not exist."""


class SagaNotFoundException(ResourceNotFoundException):
    """No saga instance is stored under the given correlation id."""


class ConflictException(BusinessException):
    """Operation conflicts with current state (e.g. duplicate, version mismatch)."""


class DuplicateKeyException(ConflictException):
    """A saga instance with the same correlation id already exists."""


class ConcurrencyException(BusinessException):
    """Concurrent modification conflict (e.g. optimistic locking failure)."""


class VersionConflictException(ConcurrencyException):
    """Compare-and-swap lost: the stored version differs from the expected one."""


class SagaDefinitionException(BusinessException):
    """A saga definition is malformed (empty, duplicate steps, bad phases, cycles)."""


class IllegalTransitionException(BusinessException):
    """A step or saga status change would violate the state machine."""


# =============================================================================
# Infrastructure Exceptions
# =============================================================================


class InfrastructureException(SagaFlowException):
    """Infrastructure failures: database, messaging, network."""


class ServiceUnavailableException(InfrastructureException):
    """Downstream service (store, broker) is unavailable."""


class RetryExhaustedException(InfrastructureException):
    """All retry attempts have been exhausted without success."""
