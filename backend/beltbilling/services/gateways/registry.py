"""Gateway adapter registry"""
import logging
import threading
from typing import Dict, Optional

from beltbilling.core.config import GATEWAY_CARD, GATEWAY_PIX, SUPPORTED_GATEWAYS, settings
from beltbilling.core.errors import UnknownGatewayError
from beltbilling.services.credential_cache import CredentialCache, credential_cache
from beltbilling.services.gateways.base import GatewayAdapter
from beltbilling.services.gateways.card import CardAdapter
from beltbilling.services.gateways.pix import PixAdapter

logger = logging.getLogger(__name__)

# Lazy initialization - adapters are built on first use
_adapters: Dict[str, GatewayAdapter] = {}
_lock = threading.Lock()


def build_adapter(gateway: str, cache: Optional[CredentialCache] = None) -> GatewayAdapter:
    """Construct the adapter for ``gateway`` from settings"""
    cache = cache or credential_cache
    if gateway == GATEWAY_PIX:
        return PixAdapter(
            cache,
            base_url=settings.EFI_PIX_URL,
            client_id=settings.EFI_CLIENT_ID,
            client_secret=settings.EFI_CLIENT_SECRET,
            pix_key=settings.EFI_PIX_KEY,
            webhook_secret=settings.EFI_WEBHOOK_SECRET,
            timeout=settings.GATEWAY_HTTP_TIMEOUT,
            cert_path=settings.EFI_CERT_PATH or None,
            key_path=settings.EFI_CERT_KEY_PATH or None,
            refresh_lead=settings.TOKEN_REFRESH_LEAD_SECONDS,
        )
    if gateway == GATEWAY_CARD:
        return CardAdapter(
            cache,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            timeout=settings.GATEWAY_HTTP_TIMEOUT,
            refresh_lead=settings.TOKEN_REFRESH_LEAD_SECONDS,
        )
    raise UnknownGatewayError(gateway)


def get_adapter(gateway: str) -> GatewayAdapter:
    """Return the shared adapter for ``gateway``.

    Raises:
        UnknownGatewayError: gateway is not one we integrate with
    """
    if gateway not in SUPPORTED_GATEWAYS:
        raise UnknownGatewayError(gateway)
    adapter = _adapters.get(gateway)
    if adapter is None:
        with _lock:
            adapter = _adapters.get(gateway)
            if adapter is None:
                adapter = build_adapter(gateway)
                _adapters[gateway] = adapter
                logger.info(f"Initialized {gateway} gateway adapter")
    return adapter


def set_adapter(gateway: str, adapter: Optional[GatewayAdapter]) -> None:
    """Replace (or with None, drop) the shared adapter for a gateway"""
    with _lock:
        if adapter is None:
            _adapters.pop(gateway, None)
        else:
            _adapters[gateway] = adapter


def close_adapters() -> None:
    """Release HTTP clients and cached credentials (shutdown)"""
    with _lock:
        for adapter in _adapters.values():
            close = getattr(adapter, "close", None)
            if close:
                close()
        _adapters.clear()
    credential_cache.clear()
