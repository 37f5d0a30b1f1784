"""Gateway-neutral adapter interface"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, TypeVar

from beltbilling.core import otel
from beltbilling.core.errors import AuthError
from beltbilling.schemas.payments import Charge, ChargeRequest, ChargeStatus, NormalizedEvent
from beltbilling.services.credential_cache import CredentialCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GatewayAdapter(ABC):
    """Translates gateway-neutral requests into one provider's API.

    Subclasses implement the provider calls; authenticated calls go through
    ``_call_authenticated`` so every adapter shares the same 401 handling:
    invalidate the cached credential, fetch a new one, retry exactly once.
    """

    gateway: str = ""
    signature_header: str = ""

    def __init__(self, cache: CredentialCache):
        self._cache = cache

    @property
    @abstractmethod
    def signature_required(self) -> bool:
        """True when inbound webhooks must carry a valid signature"""

    @abstractmethod
    def create_recurring_charge(self, req: ChargeRequest) -> Charge:
        ...

    @abstractmethod
    def get_charge_status(self, charge_id: str) -> ChargeStatus:
        ...

    @abstractmethod
    def cancel_recurrence(self, recurrence_id: str) -> None:
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_webhook_payload(self, payload: bytes) -> List[NormalizedEvent]:
        """Convert a provider webhook body into zero or more normalized events.

        Raises:
            PayloadError: body is not something this provider would send
        """

    def resolve_payment_id(self, event: NormalizedEvent) -> Optional[str]:
        """Ledger key a refund settles against"""
        return event.gateway_payment_id

    def _call_authenticated(self, operation: str, call: Callable[[str], T]) -> T:
        """Run ``call(token)``; on AuthError refresh the credential and retry once.

        Errors raised while obtaining the token itself are not retried.
        """
        with otel.gateway_span(self.gateway, operation) as span:
            token = self._cache.get_token(self.gateway)
            try:
                return call(token)
            except AuthError as e:
                logger.warning(f"{self.gateway} rejected credentials during {operation}, refreshing: {e}")
                self._cache.invalidate(self.gateway, stale_token=token)
                span.set_attribute("billing.credential_refreshed", True)

            token = self._cache.get_token(self.gateway)
            try:
                return call(token)
            except AuthError:
                logger.error(f"{self.gateway} rejected freshly issued credentials during {operation}")
                raise


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
