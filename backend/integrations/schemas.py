"""
Bsale API payload models.

Bsale returns ids as strings in practice despite documenting them as numbers;
pydantic's lax int coercion accepts both "123" and 123 uniformly.
"""

from pydantic import BaseModel, ConfigDict, Field


class _BsaleModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ResourceRef(_BsaleModel):
    id: int
    href: str | None = None


class StockItem(_BsaleModel):
    id: int
    quantity: float
    quantity_reserved: float = Field(alias="quantityReserved")
    quantity_available: float = Field(alias="quantityAvailable")
    variant: ResourceRef
    office: ResourceRef | None = None


class ProductRef(_BsaleModel):
    id: int | None = None
    href: str | None = None
    name: str | None = None


class Variant(_BsaleModel):
    id: int
    code: str | None = None
    bar_code: str | None = Field(default=None, alias="barCode")
    description: str | None = None
    final_price: float | None = Field(default=None, alias="finalPrice")
    product: ProductRef | None = None

    @property
    def display_name(self) -> str | None:
        """Product name, falling back to the variant description."""
        if self.product is not None and self.product.name:
            if self.description:
                return f"{self.product.name} - {self.description}"
            return self.product.name
        return self.description


class PriceList(_BsaleModel):
    id: int
    name: str
    state: int


class PriceListDetail(_BsaleModel):
    id: int
    variant_value: float = Field(alias="variantValue")
    variant_value_with_taxes: float = Field(alias="variantValueWithTaxes")
    variant: ResourceRef


class DocumentVariantRef(_BsaleModel):
    id: int
    code: str | None = None


class DocumentDetail(_BsaleModel):
    id: int
    quantity: float
    variant: DocumentVariantRef


class DocumentDetails(_BsaleModel):
    items: list[DocumentDetail] = Field(default_factory=list)


class Document(_BsaleModel):
    id: int
    emission_date: int = Field(alias="emissionDate")  # unix seconds
    state: int = 0
    office: ResourceRef | None = None
    details: DocumentDetails = Field(default_factory=DocumentDetails)


class Page(_BsaleModel):
    """Envelope shared by all Bsale list endpoints."""

    href: str | None = None
    count: int = 0
    limit: int = 0
    offset: int = 0
    items: list[dict] = Field(default_factory=list)
    next: str | None = None
