import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from factories import FakeConnector
from pricehub.core.config import Settings
from pricehub.core.context import PipelineContext
from pricehub.db.base import Base
from pricehub.db.session import build_session_factory
from pricehub.integrations.connector import ConnectorRegistry
from pricehub.services.outbox_service import SubscriberRegistry


@pytest.fixture
def test_settings():
    return Settings(
        RUN_BACKGROUND_JOBS=False,
        APPLY_TARGET_DELAY_MS=0,
        CONNECTOR_TIMEOUT_SECONDS=0.5,
        OUTBOX_HANDLER_TIMEOUT_SECONDS=0.5,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricehub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def connectors(connector):
    registry = ConnectorRegistry()
    registry.register("shopify", connector)
    return registry


@pytest.fixture
def pipeline_context(test_settings, session_factory, connectors):
    return PipelineContext(
        settings=test_settings,
        engine=None,
        session_factory=session_factory,
        connectors=connectors,
        subscribers=SubscriberRegistry(),
    )
