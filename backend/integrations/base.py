"""
Inventory API client contract.

The sync and consumption workers depend on this protocol, not on the concrete
Bsale client, so tests can substitute a fake that yields canned stock items
and variants.
"""

from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Protocol

from integrations.schemas import Document, StockItem, Variant


class InventoryClient(Protocol):
    def get_all_stocks(self) -> AsyncIterator[StockItem]:
        """Lazy, finite, non-restartable stream of every stock row."""
        ...

    async def get_variant(self, variant_id: int) -> Variant: ...

    async def get_variants_batch(self, variant_ids: Iterable[int]) -> dict[int, Variant]:
        """Failed lookups are omitted from the result, never raised."""
        ...

    async def get_price_map(self, price_list_id: int) -> dict[int, float]: ...

    async def get_all_documents(
        self,
        start: datetime,
        end: datetime,
        expand: list[str] | None = None,
        state: int | None = None,
    ) -> list[Document]: ...

    async def aclose(self) -> None: ...


class InventoryClientFactory(Protocol):
    def __call__(self, access_token: str) -> InventoryClient: ...
