"""
Shared fixtures: a throwaway SQLite ledger, organizations and an app wired to them
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from bloodchain.config import Settings
from bloodchain.database import Base, build_engine, get_db
from bloodchain.models import Organization
from bloodchain.security import create_access_token
from bloodchain.services.attachments import AttachmentStore
from bloodchain.services.chain_builder import ConversationLocks, MessageLedger
from main import create_app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        secret_key="test-secret",
        attachment_dir=str(tmp_path / "attachments"),
        environment="test",
        append_retry_backoff=0.0,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def orgs(db):
    records = {
        "hospital": Organization(id="hosp-1", name="City Hospital", org_type="hospital"),
        "bloodbank": Organization(id="bank-1", name="Central Blood Bank", org_type="bloodbank"),
        "other": Organization(id="hosp-2", name="County Hospital", org_type="hospital"),
        "admin": Organization(id="admin-1", name="Platform Admin", org_type="admin"),
    }
    db.add_all(records.values())
    db.commit()
    return records


@pytest.fixture
def locks():
    return ConversationLocks()


@pytest.fixture
def ledger(db, settings, locks):
    return MessageLedger(db, settings, locks, AttachmentStore(settings))


@pytest.fixture
def raw_sql(engine):
    """Run a statement outside the ORM, the way someone editing the database would"""
    def run(statement, **params):
        with engine.begin() as conn:
            conn.execute(text(statement), params)
    return run


@pytest.fixture
def app(settings, engine, session_factory):
    app = create_app(settings, engine=engine)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app, orgs):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def token_for(settings):
    def token(org_id):
        return create_access_token(org_id, settings)
    return token


@pytest.fixture
def auth(token_for):
    def headers(org_id):
        return {"Authorization": f"Bearer {token_for(org_id)}"}
    return headers
