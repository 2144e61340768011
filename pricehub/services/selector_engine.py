import logging
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.errors import SelectorError
from pricehub.core.observability import log_step
from pricehub.models.catalog import PriceVersion, Product
from pricehub.schemas.pricing import CandidateProduct
from pricehub.schemas.selector import Selector, parse_selector

logger = logging.getLogger(__name__)


class SelectorEngine:
    """
    Resolves a selector to catalog candidates.

    Tenant, project and active-record scoping is applied in SQL before the
    predicate tree sees any row, so no selector can widen it.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_scope(self, tenant_id: str, project_id: str) -> list[CandidateProduct]:
        stmt = (
            select(Product, PriceVersion)
            .outerjoin(
                PriceVersion,
                and_(PriceVersion.product_id == Product.id, PriceVersion.valid_to.is_(None)),
            )
            .where(
                Product.tenant_id == tenant_id,
                Product.project_id == project_id,
                Product.active.is_(True),
            )
            .order_by(Product.created_at, Product.id, PriceVersion.created_at.desc())
        )
        result = await self.session.execute(stmt)

        candidates: dict[Any, CandidateProduct] = {}
        for product, version in result.all():
            # Rows are ordered newest version first; keep the first per product
            if product.id in candidates:
                continue
            candidates[product.id] = CandidateProduct(
                product_id=product.id,
                sku=product.sku,
                title=product.title or "",
                vendor=product.vendor,
                product_type=product.product_type,
                tags=tuple(product.tags or ()),
                channel_refs=product.channel_refs,
                current_price=version.unit_amount if version else None,
                currency=version.currency if version else "USD",
                compare_at=version.compare_at if version else None,
            )
        return list(candidates.values())

    @log_step("selector.evaluate")
    async def evaluate(self, selector: Selector | dict[str, Any], tenant_id: str, project_id: str) -> list[CandidateProduct]:
        """Candidates matching the selector; a selector that cannot be parsed matches nothing."""
        try:
            predicate = parse_selector(selector)
        except SelectorError as e:
            logger.warning("Selector rejected, failing closed", extra={"extra": {
                "tenant_id": tenant_id, "project_id": project_id, "error": str(e)}})
            return []

        scope = await self.load_scope(tenant_id, project_id)
        matched = [candidate for candidate in scope if predicate.matches(candidate)]
        logger.info("Selector evaluated", extra={"extra": {
            "tenant_id": tenant_id, "project_id": project_id, "scope": len(scope), "matched": len(matched)}})
        return matched

    async def count_matching(self, selector: Selector | dict[str, Any], tenant_id: str, project_id: str) -> int:
        return len(await self.evaluate(selector, tenant_id, project_id))
