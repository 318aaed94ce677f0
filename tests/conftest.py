"""Shared pytest fixtures for chatrelay tests."""

import sys

sys.dont_write_bytecode = True

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatrelay.api.factory import create_app  # noqa: E402
from chatrelay.config import Settings  # noqa: E402
from chatrelay.infra.storage import InMemoryStorage  # noqa: E402
from chatrelay.realtime.hub import BroadcastHub  # noqa: E402

from helpers import SIGNING_SECRET, VERIFY_TOKEN, FakeAdapter, RecordingObserver  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        meta_access_token="test-token",
        meta_phone_number_id="123456789",
        meta_verify_token=VERIFY_TOKEN,
        media_root=str(tmp_path / "media"),
        media_signing_secret=SIGNING_SECRET,
        public_base_url="https://relay.example.com",
        media_workers=1,
        media_queue_size=10,
    )


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def observer(hub) -> RecordingObserver:
    obs = RecordingObserver()
    hub.register(obs)
    return obs


@pytest.fixture
def app(settings, storage, adapter, hub):
    application = create_app(settings, storage=storage, adapter=adapter, hub=hub)
    yield application
    application.state.media_queue.shutdown(timeout=5)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
