import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Identity and database settings are read at import time.
os.environ.setdefault(
    "LEANCOFFEE_JWT_SECRET_KEY", "leancoffee-test-signing-secret-0123456789abcdef"
)
os.environ["LEANCOFFEE_DATABASE_URL"] = "sqlite://"

from leancoffee.auth.identity import create_access_token  # noqa: E402
from leancoffee.data.session_store import SessionStore  # noqa: E402
from leancoffee.database import Base, build_session_factory, create_session_engine  # noqa: E402
from leancoffee.main import app  # noqa: E402
from leancoffee.services.gateway import build_gateway, get_gateway  # noqa: E402

FACILITATOR_ID = "fac-001"
ATTENDEE_ID = "att-001"
OTHER_ATTENDEE_ID = "att-002"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory database per test; StaticPool keeps one shared connection."""
    engine = create_session_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    factory = build_session_factory(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def gateway(session_factory):
    core = build_gateway(session_factory)
    core.presence.grace_period_seconds = 0.05
    core.locks._default_timeout = 1.0
    return core


@pytest.fixture
def events(gateway):
    """Every event the hub publishes during the test, in order."""
    recorded = []
    gateway.hub.add_listener(recorded.append)
    return recorded


@pytest.fixture
def make_session(session_factory):
    def _make(title: str = "Weekly Lean Coffee", facilitator_id: str = FACILITATOR_ID) -> str:
        with session_factory() as db:
            session = SessionStore(db).create_session(
                title=title, facilitator_id=facilitator_id
            )
            return session.session_id

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, display_name: str = None) -> dict:
        token = create_access_token(user_id, display_name=display_name)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def token_for():
    def _token(user_id: str) -> str:
        return create_access_token(user_id)

    return _token


@pytest.fixture(scope="function")
def client(gateway):
    """TestClient bound to this test's gateway; one event loop for the whole test."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_gateway, None)
