import pytest

from app import create_app
from store import LogStore


@pytest.fixture
def store():
    s = LogStore.open(":memory:")
    yield s
    s.close()


@pytest.fixture
def small_page_store():
    """Forces several page fetches per query."""
    s = LogStore.open(":memory:", page_size=3)
    yield s
    s.close()


@pytest.fixture
def app(store):
    application = create_app(store)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()
