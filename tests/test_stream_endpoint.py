"""
Websocket protocol tests:
1. greeting (placeholder, then snapshot once one exists)
2. ping/pong and feed registration over the socket
3. tenant selection via subprotocol or ?tenant= and rejection of bad ids
4. live push of new items, isolated per tenant
"""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.config import Settings
from app.main import create_app
from app.models.feed_item import RawFeedItem
from tests.fixtures import RecordingSourceFactory


@pytest.fixture
def factory() -> RecordingSourceFactory:
    return RecordingSourceFactory()


@pytest.fixture
def client(tmp_path, factory):
    settings = Settings(DATA_DIR=str(tmp_path), DEBOUNCE_SECONDS=30)
    app = create_app(settings, source_factory=factory)
    with TestClient(app) as test_client:
        yield test_client


def test_new_subscriber_gets_placeholder(client):
    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        greeting = ws.receive_json()

    assert isinstance(greeting, list) and len(greeting) == 1
    assert greeting[0]["title"] == "" and greeting[0]["link"] == ""
    assert "date" in greeting[0]


def test_ping_is_answered_and_not_registered(client, factory):
    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        ws.receive_json()
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

    assert factory.created == {}


def test_other_messages_register_feeds(client, factory, tmp_path):
    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        ws.receive_json()
        ws.send_text("http://feeds.example/rss")
        ws.send_text("http://feeds.example/rss")
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

    assert factory.created["acme"].urls == ["http://feeds.example/rss"]
    feeds = json.loads((tmp_path / "acme" / "feeds.json").read_text(encoding="utf-8"))
    assert feeds == {"log": [{"feed": "http://feeds.example/rss"}]}


def test_binary_frame_is_treated_as_feed_url(client, factory):
    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        ws.receive_json()
        ws.send_bytes(b"http://feeds.example/rss")
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

    assert factory.created["acme"].urls == ["http://feeds.example/rss"]


def test_underscores_in_subprotocol_map_to_dashes(client, factory):
    with client.websocket_connect("/", subprotocols=["my_tenant"]) as ws:
        assert ws.accepted_subprotocol == "my_tenant"
        ws.receive_json()
        ws.send_text("http://feeds.example/rss")
        ws.send_text("ping")
        ws.receive_text()

    assert list(factory.created) == ["my-tenant"]


def test_query_parameter_fallback(client, factory):
    with client.websocket_connect("/ws?tenant=beta") as ws:
        ws.receive_json()
        ws.send_text("http://feeds.example/rss")
        ws.send_text("ping")
        ws.receive_text()

    assert list(factory.created) == ["beta"]


@pytest.mark.parametrize("url", ["/", "/ws?tenant=..", "/ws?tenant=a%2Fb"])
def test_missing_or_unsafe_tenant_is_refused(client, url):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(url) as ws:
            ws.receive_text()
    assert excinfo.value.code == 1008


def test_new_item_is_pushed_to_tenant_only(client):
    hub = client.app.state.hub
    raw = RawFeedItem(
        title="X",
        link="http://a/1",
        date="2024-01-01T00:00:00Z",
        summary="<p>hi &amp; bye</p>",
    )

    with client.websocket_connect("/", subprotocols=["acme"]) as acme, \
            client.websocket_connect("/", subprotocols=["beta"]) as beta:
        acme.receive_json()
        beta.receive_json()

        client.portal.call(hub.pipeline.ingest, "acme", raw)

        assert acme.receive_json() == [
            {"title": "X", "date": "2024-01-01T00:00:00Z", "link": "http://a/1", "summary": "hi & bye"}
        ]
        # if beta had been sent the item it would arrive before the pong
        beta.send_text("ping")
        assert beta.receive_text() == "pong"


def test_snapshot_greets_later_subscribers(client):
    hub = client.app.state.hub
    for n in (2, 1):
        client.portal.call(
            hub.pipeline.ingest,
            "acme",
            RawFeedItem(title=f"T{n}", link=f"http://a/{n}", date=f"2024-01-0{n}T00:00:00Z", summary=""),
        )
    client.portal.call(hub.debouncer.rebuild_now, "acme")

    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        greeting = ws.receive_json()

    assert [entry["link"] for entry in greeting] == ["http://a/1", "http://a/2"]


def test_health_and_tenant_listing(client):
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/").json()["ok"] is True
    assert "x-request-id" in client.get("/healthz").headers

    with client.websocket_connect("/", subprotocols=["acme"]) as ws:
        ws.receive_json()
        ws.send_text("http://feeds.example/rss")
        ws.send_text("ping")
        ws.receive_text()

        body = client.get("/api/v1/tenants").json()

    assert body["total"] == 1
    assert body["items"][0] == {
        "tenant_id": "acme",
        "feeds": 1,
        "subscribers": 1,
        "snapshot_ready": False,
    }


def test_restart_restores_tenants(tmp_path):
    settings = Settings(DATA_DIR=str(tmp_path), DEBOUNCE_SECONDS=30)

    first = RecordingSourceFactory()
    with TestClient(create_app(settings, source_factory=first)) as c:
        with c.websocket_connect("/", subprotocols=["acme"]) as ws:
            ws.receive_json()
            ws.send_text("http://feeds.example/rss")
            ws.send_text("ping")
            ws.receive_text()

    second = RecordingSourceFactory()
    with TestClient(create_app(settings, source_factory=second)) as c:
        assert c.app.state.hub.registry.tenants() == ["acme"]
    assert second.created["acme"].urls == ["http://feeds.example/rss"]
    assert second.created["acme"].closed is True
