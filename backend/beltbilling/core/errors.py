"""Error taxonomy for gateway calls and webhook processing.

Gateway errors carry a ``retryable`` flag so callers can decide whether their
own retry policy applies. Nothing in the adapters or the credential cache
retries on its own, apart from the single re-authentication after a 401.
"""
from typing import Optional


class GatewayError(Exception):
    """Base class for failures talking to a payment gateway"""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        gateway: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.gateway = gateway
        self.status_code = status_code
        self.code = code

    def __str__(self):
        prefix = f"[{self.gateway}] " if self.gateway else ""
        if self.status_code:
            return f"{prefix}{self.message} (status {self.status_code})"
        return f"{prefix}{self.message}"


class AuthError(GatewayError):
    """Credentials rejected or token could not be obtained"""


class ValidationError(GatewayError):
    """Request rejected by the gateway or by local pre-validation"""


class ConflictError(GatewayError):
    """Resource already exists (e.g. duplicate recurrence contract)"""


class NotFoundError(GatewayError):
    """Resource does not exist on the gateway"""


class RateLimitError(GatewayError):
    retryable = True


class ServerError(GatewayError):
    retryable = True


class TransportError(GatewayError):
    """Network failure before a response was received"""

    retryable = True


class RecurrenceDeclinedError(GatewayError):
    """Payer authorization ended without approval (rejected, canceled or expired)"""

    def __init__(self, message: str, *, state: str, gateway: Optional[str] = None):
        super().__init__(message, gateway=gateway)
        self.state = state


class WaitCancelledError(Exception):
    """A polling wait was abandoned by its caller"""


class SignatureError(Exception):
    """Webhook rejected before persistence: signature missing or invalid"""


class PayloadError(Exception):
    """Webhook body could not be parsed into events"""


class UnknownGatewayError(Exception):
    pass


class ProcessingError(Exception):
    """Failure while applying a webhook event"""

    transient = True


class TransientProcessingError(ProcessingError):
    transient = True


class PermanentProcessingError(ProcessingError):
    transient = False


class IllegalTransitionError(PermanentProcessingError):
    """Requested subscription status change is not allowed"""

    def __init__(self, from_status: str, to_status: str, subscription_id=None):
        self.from_status = from_status
        self.to_status = to_status
        self.subscription_id = subscription_id
        super().__init__(
            f"Illegal subscription transition {from_status} -> {to_status}"
            + (f" for subscription {subscription_id}" if subscription_id is not None else "")
        )


def error_for_status(
    status_code: int,
    message: str,
    *,
    gateway: Optional[str] = None,
    code: Optional[str] = None,
) -> GatewayError:
    """Map an HTTP status from a gateway to the error taxonomy"""
    kwargs = {"gateway": gateway, "status_code": status_code, "code": code}
    if status_code == 401:
        return AuthError(message, **kwargs)
    if status_code == 404:
        return NotFoundError(message, **kwargs)
    if status_code == 409:
        return ConflictError(message, **kwargs)
    if status_code == 429:
        return RateLimitError(message, **kwargs)
    if status_code >= 500:
        return ServerError(message, **kwargs)
    return ValidationError(message, **kwargs)
