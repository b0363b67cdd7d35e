"""
Pytest configuration and shared fixtures.

Environment defaults are set before any msgsync import so the settings object
points at a throwaway SQLite database and the provider starts unconfigured.
"""

import os
from urllib.parse import parse_qs

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_msgsync.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["PROVIDER_TOKEN"] = ""
os.environ["PROVIDER_PHONE_NUMBER"] = ""
os.environ["SYNC_AUTOSTART_USER_ID"] = ""

import httpx
import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from msgsync.config import get_settings
get_settings.cache_clear()

from msgsync import models  # noqa: E402,F401
from msgsync.provider import ProviderClient  # noqa: E402
from msgsync.storage import Base, SessionLocal, engine, update_provider_settings  # noqa: E402


TEST_TOKEN = "tok-abc123"
TEST_PHONE = "+98 912-000-1111"


class FakeProvider:
    """
    In-memory stand-in for the messaging provider, served via httpx.MockTransport.

    pages maps page number -> JSON payload; unknown pages return [].
    """

    def __init__(self, pages=None, fail_pages=(), send_status=200):
        self.pages = pages or {}
        self.fail_pages = set(fail_pages)
        self.send_status = send_status
        self.requests = []
        self.sent = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.startswith("/receivedMessages/"):
            page = int(request.url.params["page"])
            if page in self.fail_pages:
                return httpx.Response(500, text="upstream error")
            return httpx.Response(200, json=self.pages.get(page, []))
        if request.url.path.startswith("/sendMsg/"):
            form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
            self.sent.append(form)
            return httpx.Response(self.send_status, text="ok")
        return httpx.Response(404)

    @property
    def inbox_pages_requested(self):
        return [
            int(r.url.params["page"])
            for r in self.requests
            if r.url.path.startswith("/receivedMessages/")
        ]

    def client(self) -> ProviderClient:
        return ProviderClient(
            base_url="https://provider.test",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def db_factory():
    """Fresh tables for each test; yields the session factory."""
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_factory):
    with db_factory() as session:
        yield session


@pytest.fixture
def configured(db_factory):
    """Save provider credentials."""
    with db_factory() as session:
        update_provider_settings(session, token=TEST_TOKEN, phone_number=TEST_PHONE)
    return db_factory
