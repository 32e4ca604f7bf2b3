from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from bookchat.catalog.router import get_catalog_client
from bookchat.config import config
from bookchat.conversation import SessionRegistry
from bookchat.extraction import ExtractionEngine
from bookchat.main import app

from .conftest import FakeCatalog, FakeCompletion, make_book

REPLY = 'Try **"Sapiens" by Yuval Noah Harari**: a sweeping history of us.'


@pytest.fixture
def catalog():
    return FakeCatalog({
        "Sapiens Yuval Noah Harari": [make_book("Sapiens", ["Yuval Noah Harari"])],
        "history": [make_book("Sapiens", ["Yuval Noah Harari"]), make_book("Guns, Germs, and Steel")],
    })


@pytest.fixture
def client(tmp_path, monkeypatch, store, catalog):
    monkeypatch.setattr(config, "CHAT_DB_PATH", str(tmp_path / "app.db"))
    completion = FakeCompletion(chat=REPLY, gate="YES", extract='["Sapiens Yuval Noah Harari"]')
    app.dependency_overrides[get_catalog_client] = lambda: catalog
    with TestClient(app) as test_client:
        app.state.sessions = SessionRegistry(store, completion, ExtractionEngine(completion, catalog))
        yield test_client
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/").json()["status"] == "ok"


def test_chat_turn_returns_cards(client):
    response = client.post("/api/chat/reader-1", json={"message": "a big-picture history book?"})

    body = response.json()
    assert response.status_code == 200
    assert body["accepted"] is True
    assert body["usage"] == 1
    card = body["message"]["books"][0]
    assert card["title"] == "Sapiens"
    assert card["initials"] == "SY"


def test_blank_message_is_rejected(client):
    body = client.post("/api/chat/reader-1", json={"message": "  "}).json()
    assert body["accepted"] is False
    assert body["reason"] == "empty_input"


def test_history_and_usage(client):
    client.post("/api/chat/reader-1", json={"message": "history please"})

    history = client.get("/api/chat/reader-1/history").json()
    usage = client.get("/api/chat/reader-1/usage").json()

    assert [m["role"] for m in history] == ["user", "assistant"]
    assert usage["count"] == 1
    assert usage["limit_reached"] is False


def test_usage_resets_on_a_new_day(client, clock):
    client.post("/api/chat/reader-1", json={"message": "history please"})
    assert client.get("/api/chat/reader-1/usage").json()["count"] == 1

    clock.day = clock.day + timedelta(days=1)
    usage = client.get("/api/chat/reader-1/usage").json()

    assert usage["count"] == 0
    assert usage["limit_reached"] is False


def test_welcome_shown_once(client):
    assert client.get("/api/chat/reader-9/welcome").json() == {"show": True}
    assert client.get("/api/chat/reader-9/welcome").json() == {"show": False}


def test_catalog_search_paginates(client):
    body = client.get("/api/catalog/books", params={"q": "history", "page_size": 1}).json()
    assert body["total"] == 2
    assert body["total_pages"] == 2
    assert [b["title"] for b in body["items"]] == ["Sapiens"]


def test_catalog_empty_query(client):
    assert client.get("/api/catalog/books").json()["items"] == []


def test_catalog_unknown_book_is_404(client):
    assert client.get("/api/catalog/books/OL0W").status_code == 404


def test_catalog_lookup_accepts_search_ids_with_slashes(client, catalog):
    catalog.books["books/OL7353617M"] = make_book("Sapiens", ["Yuval Noah Harari"])

    response = client.get("/api/catalog/books/books/OL7353617M")

    assert response.status_code == 200
    assert response.json()["title"] == "Sapiens"
