import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_MISSING = object()

# Fields reachable from a field predicate; scope columns (tenant, project, active) are not selectable
SELECTABLE_FIELDS = ("sku", "title", "vendor", "product_type", "tags", "currency", "price", "compare_at")


class PriceSnapshot(BaseModel):
    """Price in minor currency units (cents for USD)."""
    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0)
    currency: str = "USD"
    compare_at: int | None = None


class TransformTrace(BaseModel):
    kind: str
    input_amount: int
    intermediate_amount: int
    floor: int | None = None
    ceiling: int | None = None
    applied_constraints: list[str] = Field(default_factory=list)
    final_amount: int


class TransformResult(BaseModel):
    before: PriceSnapshot
    after: PriceSnapshot
    changed: bool
    reason: str | None = None
    trace: TransformTrace


class CandidateProduct(BaseModel):
    """Active, tenant-scoped catalog item with its current price version."""
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    sku: str
    title: str = ""
    vendor: str | None = None
    product_type: str | None = None
    tags: tuple[str, ...] = ()
    channel_refs: dict[str, Any] | None = None
    current_price: int | None = None
    currency: str = "USD"
    compare_at: int | None = None

    def field_value(self, name: str) -> Any:
        if name not in SELECTABLE_FIELDS:
            return _MISSING
        if name == "price":
            return self.current_price
        return getattr(self, name)

    def snapshot(self) -> PriceSnapshot | None:
        if self.current_price is None:
            return None
        return PriceSnapshot(amount=self.current_price, currency=self.currency, compare_at=self.compare_at)

    def external_ref(self, platform: str) -> str | None:
        """Connector-side variant id, e.g. channel_refs["shopify"]["variantId"]."""
        refs = self.channel_refs or {}
        platform_refs = refs.get(platform)
        if not isinstance(platform_refs, dict):
            return None
        value = platform_refs.get("variantId") or platform_refs.get("externalId")
        if value is None or value == "":
            return None
        return str(value)
