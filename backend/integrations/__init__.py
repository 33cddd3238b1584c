"""
Commerce provider integrations.

Only Bsale is supported. Workers depend on the ``InventoryClient`` protocol
and receive a client factory at construction time:

    from integrations.bsale import build_client_factory

    factory = build_client_factory(settings)
    async with factory(tenant.bsale_access_token) as client:
        async for stock in client.get_all_stocks():
            ...
"""

from integrations.base import InventoryClient, InventoryClientFactory
from integrations.bsale import BsaleClient, build_client_factory, normalize_endpoint

__all__ = [
    "InventoryClient",
    "InventoryClientFactory",
    "BsaleClient",
    "build_client_factory",
    "normalize_endpoint",
]
