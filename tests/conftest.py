import pytest
from fastapi.testclient import TestClient

from reconciler.auth import Actor
from reconciler.config import Settings
from reconciler.database import build_engine, build_session_factory, create_tables
from reconciler.main import create_app
from reconciler.services.context import ReceiptsContext
from reconciler.services.storage import LocalReceiptStorage
from reconciler.services.workspace import SummaryCache

CRON_SECRET = "test-cron-secret"

MANAGER_HEADERS = {
    "X-User-Id": "user-1",
    "X-User-Email": "manager@example.com",
    "X-User-Name": "Pat Manager",
    "X-User-Role": "finance_manager",
}
STAFF_HEADERS = {"X-User-Id": "user-2", "X-User-Role": "staff"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'receipts.db'}",
        DATA_DIR=tmp_path,
        RECEIPTS_DIR=tmp_path / "receipts",
        CRON_SECRET=CRON_SECRET,
        OPENAI_API_KEY="",
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.DATABASE_URL)
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(settings):
    return LocalReceiptStorage(settings.RECEIPTS_DIR)


@pytest.fixture
def actor():
    return Actor(user_id="user-1", email="manager@example.com", name="Pat Manager", role="finance_manager")


@pytest.fixture
def queued_jobs():
    return []


@pytest.fixture
def make_ctx(db, settings, storage, actor, queued_jobs):
    def factory(classifier=None, role=None, storage_override=None):
        ctx_actor = actor if role is None else Actor(user_id="user-9", role=role)
        return ReceiptsContext(
            db=db,
            actor=ctx_actor,
            settings=settings,
            storage=storage_override or storage,
            classifier=classifier,
            cache=SummaryCache(),
            background=lambda job, *args: queued_jobs.append((job, args)),
        )
    return factory


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client
