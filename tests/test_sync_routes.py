"""
Tests for the /sync endpoints.

Tests cover:
- Manual poll through the API, dedup across repeated polls
- Poll with no provider configuration
- Session start/stop and status reporting
"""

import pytest
from fastapi.testclient import TestClient

from msgsync.main import app, sync_manager
from msgsync.storage import Base, engine

from conftest import FakeProvider, TEST_PHONE, TEST_TOKEN


ALICE = {"X-User-ID": "alice"}

PAGE = {"data": [{"from": "09121234567", "text": "hi", "time": "2025-01-15T10:00:00Z"}]}


@pytest.fixture
def provider():
    return FakeProvider(pages={1: PAGE})


@pytest.fixture(scope="function")
def client(provider, monkeypatch):
    monkeypatch.setattr(sync_manager, "client_factory", provider.client)
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def configure(client):
    client.put("/provider-settings", json={"token": TEST_TOKEN, "phone_number": TEST_PHONE})


class TestManualPoll:

    def test_poll_stores_message(self, client, provider):
        configure(client)

        response = client.post("/sync/poll", headers=ALICE)

        assert response.status_code == 200
        assert response.json() == {"outcome": "ok", "records_seen": 1, "new_messages": 1}
        messages = client.get("/messages/received", headers=ALICE).json()
        assert len(messages) == 1
        assert messages[0]["sender"] == "09121234567"
        assert messages[0]["status"] == "unread"
        assert provider.requests[0].url.params["phonenumber"] == "989120001111"

    def test_repoll_no_duplicate(self, client):
        configure(client)

        client.post("/sync/poll", headers=ALICE)
        response = client.post("/sync/poll", headers=ALICE)

        assert response.json()["new_messages"] == 0
        assert len(client.get("/messages/received", headers=ALICE).json()) == 1

    def test_poll_unconfigured(self, client, provider):
        response = client.post("/sync/poll", headers=ALICE)

        assert response.json()["outcome"] == "skipped"
        assert provider.requests == []

    def test_poll_provider_down(self, client, provider):
        configure(client)
        provider.fail_pages.add(1)

        response = client.post("/sync/poll", headers=ALICE)

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"


class TestSessions:

    def test_status_without_session(self, client):
        data = client.get("/sync/status", headers=ALICE).json()
        assert data["user_id"] == "alice"
        assert data["running"] is False

    def test_start_and_stop(self, client):
        started = client.post("/sync/sessions", headers=ALICE).json()
        assert started["running"] is True
        assert client.get("/sync/status", headers=ALICE).json()["running"] is True

        stopped = client.delete("/sync/sessions", headers=ALICE).json()
        assert stopped["running"] is False
        assert client.get("/sync/status", headers=ALICE).json()["running"] is False

    def test_poll_through_session_updates_status(self, client):
        configure(client)
        client.post("/sync/sessions", headers=ALICE)

        client.post("/sync/poll", headers=ALICE)

        status = client.get("/sync/status", headers=ALICE).json()
        assert status["ticks"] == 1
        assert status["last_poll"]["new_messages"] == 1
        client.delete("/sync/sessions", headers=ALICE)
