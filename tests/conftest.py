"""pytest fixtures for the dispatch backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- database_url: Per-test SQLite file database (or a shared PostgreSQL testcontainer
  when ATELIER_TEST_POSTGRES=1)
- session_factory: Function-scoped session factory with tables created
- uow_factory / store: Unit of Work factory and Job Store on that database
- storage / provider / prompt_provider: Fake external collaborators
- dispatcher / reconciler / prompt_queue: Workers wired to the fakes
"""

import os

# Settings are read at import time by atelier.app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakes import FakePromptProvider, FakeProvider, FakeStorage  # noqa: E402
from sqlalchemy import text  # noqa: E402

from atelier.core.database import init_models, setup_db_session  # noqa: E402
from atelier.services.backoff import BackoffPolicy  # noqa: E402
from atelier.services.job_store import JobStore  # noqa: E402
from atelier.uow import create_uow_factory  # noqa: E402
from atelier.workers.dispatcher import Dispatcher  # noqa: E402
from atelier.workers.prompt_queue import PromptQueue  # noqa: E402
from atelier.workers.reconciler import Reconciler  # noqa: E402

USE_POSTGRES = os.environ.get("ATELIER_TEST_POSTGRES") == "1"


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container (only when ATELIER_TEST_POSTGRES=1).

    Tables are created with SQLModel metadata by the session_factory fixture.
    """
    if not USE_POSTGRES:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_atelier",
    ).with_bind_ports(5432, None) as container:
        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def database_url(postgres_container, tmp_path) -> str:
    """Database URL for one test (fresh SQLite file unless PostgreSQL is enabled)."""
    if postgres_container is not None:
        return postgres_container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'atelier.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url):
    """Provide function-scoped session factory with tables created.

    PostgreSQL tables are emptied after each test; SQLite files are discarded.
    """
    factory = setup_db_session(database_url, pool_size=10)
    await init_models(factory)

    yield factory

    if USE_POSTGRES:
        async with factory() as session:
            # Order matters: delete from dependent tables first
            await session.execute(text("DELETE FROM prompt_jobs"))
            await session.execute(text("DELETE FROM jobs"))
            await session.commit()

    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture(scope="function")
async def store(uow_factory) -> JobStore:
    return JobStore(uow_factory, prompt_max_retries=3)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def provider(storage) -> FakeProvider:
    return FakeProvider(storage)


@pytest.fixture
def prompt_provider() -> FakePromptProvider:
    return FakePromptProvider()


@pytest.fixture
def dispatcher(store, provider, storage) -> Dispatcher:
    return Dispatcher(
        store,
        provider,
        storage,
        max_concurrency=5,
        owner_max_concurrency=None,
        max_attempts=3,
        backoff=BackoffPolicy(base_seconds=15.0, multiplier=2.0, max_seconds=300.0),
        saving_lease_seconds=120,
    )


@pytest.fixture
def reconciler(store, dispatcher, provider) -> Reconciler:
    return Reconciler(
        store,
        dispatcher,
        provider,
        claim_timeout_seconds=120,
        submitted_timeout_seconds=600,
        running_timeout_seconds=3600,
        prompt_generating_timeout_seconds=1800,
        prompt_pending_max_age_seconds=86400,
    )


@pytest.fixture
def prompt_queue(store, prompt_provider, storage) -> PromptQueue:
    return PromptQueue(
        store,
        prompt_provider,
        storage,
        batch_size=3,
        max_concurrency=3,
        backoff=BackoffPolicy(base_seconds=1.0, multiplier=2.0, max_seconds=30.0),
    )
