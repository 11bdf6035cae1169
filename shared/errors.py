"""
Error taxonomy for the order event broker.

Ingestion errors (validation, conflict, storage) are raised synchronously to
the producer. Handler errors are raised by handlers and recorded on the
delivery record by the dispatcher; they never reach the producer.
"""

from typing import Optional


class BrokerError(Exception):
    """Base class for all broker errors."""


class ValidationError(BrokerError):
    """Malformed input rejected at ingestion. Never retried."""


class ConflictError(BrokerError):
    """
    A caller-supplied sequence number collides with the log.

    Attributes:
        order_id: The order whose sequence collided
        expected: The sequence the store would have assigned
        actual: The sequence the caller supplied
    """

    def __init__(self, order_id: str, expected: int, actual: int):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Sequence conflict for order {order_id}: expected {expected}, got {actual}"
        )


class NotFoundError(BrokerError):
    """A referenced event, subscription or handler does not exist."""


class StorageError(BrokerError):
    """A durable write or read failed. Fatal to the call; the caller must retry."""


class HandlerError(BrokerError):
    """
    Raised by handlers to signal a failed delivery attempt.

    Args:
        message: Human readable reason, stored as the record's last_error
        handler_id: Optional id of the handler that failed
    """

    retryable = True

    def __init__(self, message: str, handler_id: Optional[str] = None):
        self.handler_id = handler_id
        super().__init__(message)


class TransientHandlerError(HandlerError):
    """Timeout, network failure or similar. Retried per the delivery policy."""


class PermanentHandlerError(HandlerError):
    """The handler will never accept this event. Dead-lettered immediately."""

    retryable = False
