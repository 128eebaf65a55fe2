from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from promptwatch.core.config import settings

# Override settings for tests
settings.fernet_key = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key
settings.app_env = "development"
settings.page_metadata_enabled = False

from promptwatch.core.encryption import encrypt_value  # noqa: E402
from promptwatch.core.rate_limit import limiter  # noqa: E402
from promptwatch.db.base import Base  # noqa: E402
from promptwatch.db.postgres import get_db, make_session_factory  # noqa: E402
from promptwatch.execution.broadcaster import UpdateBroker  # noqa: E402
from promptwatch.execution.dispatcher import Dispatcher  # noqa: E402
from promptwatch.execution.runner import ExecutionRunner  # noqa: E402
from promptwatch.execution.store import ExecutionStore  # noqa: E402
from promptwatch.main import app  # noqa: E402
from promptwatch.models import Business, Competitor, Prompt, ProviderConfig, Topic  # noqa: E402
from tests.fakes import FakeAdapterFactory  # noqa: E402

limiter.enabled = False


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite per test. NullPool gives every session its own connection."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory) -> ExecutionStore:
    return ExecutionStore(session_factory)


@pytest.fixture
def broker() -> UpdateBroker:
    return UpdateBroker(queue_size=50)


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def dispatcher(store, broker, adapter_factory) -> Dispatcher:
    return Dispatcher(store, broker, concurrency=2, adapter_factory=adapter_factory, analysis_retry_delay=0)


@pytest.fixture
async def client(session_factory, store, broker, dispatcher) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.broker = broker
    app.state.store = store
    app.state.runner = ExecutionRunner(dispatcher)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    await app.state.runner.shutdown(timeout=5)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest.fixture
async def business(db: AsyncSession) -> Business:
    """NordLayer with two prompts, two providers (first is primary) and two competitors."""
    biz = Business(name="NordLayer", website="https://nordlayer.com", refresh_period_days=1)
    db.add(biz)
    await db.flush()

    topic = Topic(business_id=biz.id, name="Business VPN")
    db.add(topic)
    await db.flush()

    db.add_all(
        [
            Prompt(business_id=biz.id, topic_id=topic.id, text="Best business VPN for remote teams?"),
            Prompt(business_id=biz.id, topic_id=topic.id, text="Alternatives to Perimeter 81?", is_priority=True),
            ProviderConfig(
                business_id=biz.id,
                platform_id="gpt-4o",
                provider_family="openai",
                model="gpt-4o",
                credential=encrypt_value("sk-openai"),
                is_primary=True,
            ),
            ProviderConfig(
                business_id=biz.id,
                platform_id="claude-sonnet",
                provider_family="anthropic",
                model="claude-sonnet-4-0",
                credential=encrypt_value("sk-anthropic"),
            ),
            Competitor(business_id=biz.id, name="Perimeter 81", website="https://perimeter81.com"),
            Competitor(business_id=biz.id, name="Tailscale", website="https://tailscale.com"),
        ]
    )
    await db.commit()
    await db.refresh(biz)
    return biz


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)
