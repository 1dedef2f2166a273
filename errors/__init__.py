"""Error taxonomy shared by the conversation, message and transaction layers.

Every domain operation rejects bad input with one of these exceptions before
anything is written. The API layer maps them onto HTTP responses.
"""
from typing import Optional


class DealroomError(Exception):
    """Base class for domain errors."""
    pass


class ValidationError(DealroomError):
    """Raised for malformed input: bad amounts, empty messages, bad payloads."""
    pass


class AuthorizationError(DealroomError):
    """Raised when a user acts on a conversation or transaction they may not touch."""
    pass


class NotFoundError(DealroomError):
    """Raised when a conversation, message, transaction or link does not exist."""
    pass


class InvalidStateError(DealroomError):
    """Raised when a transition is attempted from a state that forbids it.

    ``current_status`` lets callers tell "already done" apart from a failure.
    """
    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)

    @property
    def informational(self) -> bool:
        """True when the target is already in a terminal state."""
        return self.current_status in ('completed', 'cancelled')


class GatewayError(DealroomError):
    """Raised when the payment gateway cannot be reached or reports a failure.

    Retryable errors (timeouts, transport failures, payment not yet received)
    mean the caller should try again later. Terminal errors carry the
    gateway-reported status, e.g. ``expired`` or ``cancelled``.
    """
    def __init__(
        self,
        message: str,
        retryable: bool = True,
        gateway_status: Optional[str] = None
    ):
        self.retryable = retryable
        self.gateway_status = gateway_status
        super().__init__(message)


class PaymentPendingError(GatewayError):
    """Raised when the gateway has not yet seen the payment for a link."""
    def __init__(self, link_id: str):
        self.link_id = link_id
        super().__init__(
            f"Payment for link {link_id} has not been received yet",
            retryable=True,
            gateway_status='pending'
        )


__all__ = [
    'DealroomError',
    'ValidationError',
    'AuthorizationError',
    'NotFoundError',
    'InvalidStateError',
    'GatewayError',
    'PaymentPendingError'
]
