import pytest
from sqlalchemy import update

from factories import seed_product
from pricehub.db.base_class import utcnow
from pricehub.models.catalog import PriceVersion
from pricehub.services.selector_engine import SelectorEngine

TENANT = "tenant-a"
PROJECT = "project-a"


@pytest.mark.asyncio
async def test_scope_is_tenant_project_and_active_only(session):
    await seed_product(session, "A-1", 1000)
    await seed_product(session, "A-2", 1000, active=False)
    await seed_product(session, "B-1", 1000, tenant_id="tenant-b")
    await seed_product(session, "A-3", 1000, project_id="project-b")

    matched = await SelectorEngine(session).evaluate({"all": True}, TENANT, PROJECT)

    assert [c.sku for c in matched] == ["A-1"]


@pytest.mark.asyncio
async def test_selector_cannot_widen_scope(session):
    await seed_product(session, "B-1", 1000, tenant_id="tenant-b")
    selector = {"or": [{"all": True}, {"field": "tenant_id", "op": "eq", "value": "tenant-b"}]}

    assert await SelectorEngine(session).evaluate(selector, TENANT, PROJECT) == []


@pytest.mark.asyncio
async def test_price_predicate_uses_current_version(session):
    product = await seed_product(session, "A-1", 1000)
    await session.execute(update(PriceVersion).where(PriceVersion.product_id == product.id).values(valid_to=utcnow()))
    session.add(PriceVersion(product_id=product.id, tenant_id=TENANT, project_id=PROJECT, unit_amount=3000))
    await session.commit()

    engine = SelectorEngine(session)
    assert await engine.count_matching({"price": {"lt": 2000}}, TENANT, PROJECT) == 0
    matched = await engine.evaluate({"price": {"gte": 2000}}, TENANT, PROJECT)
    assert [c.current_price for c in matched] == [3000]


@pytest.mark.asyncio
async def test_unparseable_selector_matches_nothing(session, caplog):
    await seed_product(session, "A-1", 1000)

    matched = await SelectorEngine(session).evaluate({"colour": "red"}, TENANT, PROJECT)

    assert matched == []
    assert any("failing closed" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_candidate_carries_platform_reference(session):
    await seed_product(session, "A-1", 1000, variant_id="4411")
    await seed_product(session, "A-2", 1000, variant_id=None)

    matched = {c.sku: c for c in await SelectorEngine(session).evaluate({"all": True}, TENANT, PROJECT)}

    assert matched["A-1"].external_ref("shopify") == "4411"
    assert matched["A-2"].external_ref("shopify") is None
