"""Payment gateway adapters - public API exports"""
from beltbilling.services.gateways.base import GatewayAdapter
from beltbilling.services.gateways.card import CardAdapter
from beltbilling.services.gateways.pix import PixAdapter
from beltbilling.services.gateways.registry import (
    build_adapter,
    close_adapters,
    get_adapter,
    set_adapter,
)

__all__ = [
    "GatewayAdapter",
    "CardAdapter",
    "PixAdapter",
    "build_adapter",
    "close_adapters",
    "get_adapter",
    "set_adapter",
]
