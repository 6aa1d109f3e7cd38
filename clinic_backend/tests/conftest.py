import types

import pytest
import respx
from fastapi.testclient import TestClient

from clinic_backend.main import create_app
from clinic_backend.providers import GOOGLE
from clinic_backend.sessions import InMemorySessionStore

from _helpers import FakeClock, make_settings


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def session_store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def app(settings, session_store):
    return create_app(settings=settings, session_store=session_store)


@pytest.fixture()
def client(app):
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture()
def google():
    """Mocked Google endpoints; tests attach responses per route."""
    with respx.mock(assert_all_called=False) as router:
        yield types.SimpleNamespace(
            token=router.post(GOOGLE.token_endpoint),
            tokeninfo=router.get(GOOGLE.tokeninfo_endpoint),
            jwks=router.get(GOOGLE.jwks_uri),
        )
