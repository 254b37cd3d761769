"""Tests for the remote mirror: HTTP client, outbox and drain gating."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from http.client import BadStatusLine, IncompleteRead
from unittest.mock import MagicMock
from urllib.error import HTTPError, URLError

import pytest

from stockflow import data_manager, sync
from stockflow.storage import StateStore
from stockflow.sync import HttpDocumentStore, RemoteMirror, RemoteSyncError, SyncOutbox

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _response(body: bytes) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value.read.return_value = body
    return response


# ---------------------------------------------------------------------------
# HTTP document store
# ---------------------------------------------------------------------------


def test_http_fetch_decodes_document(monkeypatch):
    """GET requests carry the bearer token and return the decoded object."""

    captured = {}

    def fake_urlopen(request, timeout):
        captured["request"] = request
        captured["timeout"] = timeout
        return _response(b'{"users": []}')

    monkeypatch.setattr(sync, "urlopen", fake_urlopen)
    client = HttpDocumentStore("https://remote.test/api/", token="t0k", timeout=3)

    assert client.fetch("admin_users", "main") == {"users": []}
    request = captured["request"]
    assert request.get_full_url() == "https://remote.test/api/admin_users/main"
    assert request.get_method() == "GET"
    assert request.get_header("Authorization") == "Bearer t0k"
    assert captured["timeout"] == 3


def test_http_fetch_quotes_document_ids(monkeypatch):
    """Identities with special characters are URL-encoded."""

    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.get_full_url()
        return _response(b"{}")

    monkeypatch.setattr(sync, "urlopen", fake_urlopen)
    HttpDocumentStore("https://remote.test").fetch("stores", "a/b@x.com")

    assert captured["url"] == "https://remote.test/stores/a%2Fb%40x.com"


def test_http_fetch_missing_document_returns_none(monkeypatch):
    """A 404 means the document does not exist yet."""

    def fake_urlopen(request, timeout):
        raise HTTPError(request.get_full_url(), 404, "Not Found", None, None)

    monkeypatch.setattr(sync, "urlopen", fake_urlopen)
    assert HttpDocumentStore("https://remote.test").fetch("stores", "x") is None


@pytest.mark.parametrize(
    "failure",
    [
        HTTPError("https://remote.test", 500, "Server Error", None, None),
        URLError("connection refused"),
        BadStatusLine("GARBAGE"),
        IncompleteRead(b"{\"us"),
    ],
)
def test_http_fetch_wraps_transport_errors(monkeypatch, failure):
    """Transport failures surface as RemoteSyncError."""

    def fake_urlopen(request, timeout):
        raise failure

    monkeypatch.setattr(sync, "urlopen", fake_urlopen)
    with pytest.raises(RemoteSyncError):
        HttpDocumentStore("https://remote.test").fetch("stores", "x")


def test_http_upsert_sends_json_patch(monkeypatch):
    """Upserts are PATCH requests with a JSON body."""

    captured = {}

    def fake_urlopen(request, timeout):
        captured["request"] = request
        return _response(b"")

    monkeypatch.setattr(sync, "urlopen", fake_urlopen)
    HttpDocumentStore("https://remote.test").upsert("stores", "x", {"categories": ["A"]})

    request = captured["request"]
    assert request.get_method() == "PATCH"
    assert json.loads(request.data.decode("utf-8")) == {"categories": ["A"]}
    assert request.get_header("Content-type") == "application/json"


def test_garbled_responses_never_leave_the_mirror(tmp_path, monkeypatch, owner_session):
    """Protocol-level failures are logged on pull and rescheduled on push."""

    def garbled_urlopen(request, timeout):
        raise BadStatusLine("GARBAGE")

    monkeypatch.setattr(sync, "urlopen", garbled_urlopen)
    mirror = RemoteMirror(store=HttpDocumentStore("https://remote.test"), outbox=SyncOutbox(tmp_path / "outbox.json"))
    store = StateStore(tmp_path / "data", mirror=mirror)

    assert store.load(owner_session).products == ()
    assert not mirror.is_confirmed("stores", owner_session.identity)

    def patch_fails(request, timeout):
        if request.get_method() == "PATCH":
            raise IncompleteRead(b"")
        raise HTTPError(request.get_full_url(), 404, "Not Found", None, None)

    monkeypatch.setattr(sync, "urlopen", patch_fails)
    assert store.pull_remote(owner_session) is False
    assert mirror.is_confirmed("stores", owner_session.identity)
    store.save(owner_session, store.load(owner_session))

    result = store.flush_mirror()
    assert (result.sent, result.failed) == (0, 1)
    assert len(mirror.outbox) == 1


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


def test_outbox_keeps_latest_snapshot_per_document(tmp_path):
    """Queuing twice for one document keeps only the newer payload."""

    path = tmp_path / "outbox.json"
    outbox = SyncOutbox(path)
    outbox.enqueue("stores", "a", {"v": 1}, now=NOW)
    outbox.enqueue("stores", "b", {"v": 1}, now=NOW)
    outbox.enqueue("stores", "a", {"v": 2}, now=NOW)

    entries = SyncOutbox(path).entries()
    assert [(entry.document_id, entry.payload) for entry in entries] == [("b", {"v": 1}), ("a", {"v": 2})]


def test_outbox_backoff_doubles_and_caps(tmp_path):
    """Each failure pushes the next attempt further out, up to the cap."""

    outbox = SyncOutbox(tmp_path / "outbox.json")
    entry = outbox.enqueue("stores", "a", {}, now=NOW)

    delays = []
    for _ in range(5):
        outbox.mark_failed(entry, "down", now=NOW, base_delay=2.0, max_delay=10.0)
        delays.append(datetime.fromisoformat(entry.next_attempt_at) - NOW)

    assert delays == [timedelta(seconds=s) for s in (2, 4, 8, 10, 10)]
    assert entry.attempts == 5
    assert entry.last_error == "down"


def test_outbox_ignores_unreadable_file(tmp_path):
    """A corrupt outbox file starts an empty queue."""

    path = tmp_path / "outbox.json"
    path.write_text("not json", encoding="utf-8")
    assert len(SyncOutbox(path)) == 0


# ---------------------------------------------------------------------------
# Mirror
# ---------------------------------------------------------------------------


def test_drain_defers_documents_never_pulled(mirror, remote_store):
    """Nothing is pushed before a successful pull of that document."""

    mirror.push("stores", "a", {"v": 1})
    result = mirror.drain(now=NOW)

    assert result == sync.DrainResult(sent=0, failed=0, deferred=1)
    assert remote_store.upserts == []


def test_pull_of_missing_document_still_confirms(mirror, remote_store):
    """A completed fetch with no document unlocks pushes."""

    assert mirror.pull("stores", "a") is None
    mirror.push("stores", "a", {"v": 1})

    assert mirror.drain(now=NOW).sent == 1
    assert remote_store.documents[("stores", "a")] == {"v": 1}


def test_failed_pull_does_not_confirm(mirror, remote_store):
    """Fetch errors are logged and keep the document locked."""

    remote_store.fail_fetch = True
    assert mirror.pull("stores", "a") is None
    assert not mirror.is_confirmed("stores", "a")


def test_failed_push_is_retried_after_backoff(mirror, remote_store):
    """A failed upload stays queued and waits for its retry time."""

    mirror.pull("stores", "a")
    mirror.push("stores", "a", {"v": 1})
    remote_store.fail_upsert = True

    assert mirror.drain(now=NOW).failed == 1
    assert mirror.drain(now=NOW + timedelta(seconds=1)).deferred == 1

    remote_store.fail_upsert = False
    assert mirror.drain(now=NOW + timedelta(seconds=3)).sent == 1
    assert len(mirror.outbox) == 0


def test_forget_pending_discards_superseded_write(mirror):
    """Remote state adopted locally replaces any queued upload."""

    mirror.push("stores", "a", {"v": 1})
    mirror.forget_pending("stores", "a")
    assert len(mirror.outbox) == 0


def test_build_mirror_follows_settings(settings):
    """A mirror exists only when a remote endpoint is configured."""

    assert sync.build_mirror(settings) is None

    remote = data_manager.RemoteSettings(endpoint="https://remote.test", token=None, timeout=4.0)
    built = sync.build_mirror(data_manager.ConfigSettings(settings.data_dir, settings.schema_version, remote=remote))

    assert isinstance(built, RemoteMirror)
    assert isinstance(built.store, HttpDocumentStore)
    assert built.store.timeout == 4.0
    assert built.outbox.path == settings.data_dir / "stockflow_outbox.json"
