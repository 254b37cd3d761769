"""Remote mirroring of stored documents.

Local storage is authoritative for day-to-day work; the remote document store
only mirrors it. Writes destined for the remote side are queued in a
file-backed outbox and drained separately from the save path, so a slow or
unreachable remote never blocks a sale and a failed push is retried with
exponential backoff instead of being lost.

A document is never pushed before it has been successfully pulled once in the
current process. This keeps a fresh, empty local session from overwriting
data that an earlier session already synced.
"""

from __future__ import annotations

import json
from http.client import HTTPException
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from . import data_manager, log
from .constants import OUTBOX_KEY


DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 300.0


class RemoteSyncError(Exception):
    """Raised when the remote document store cannot serve a request."""


class DocumentStore(Protocol):
    """Minimal contract of a remote document store."""

    def fetch(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    def upsert(self, collection: str, document_id: str, payload: Mapping[str, Any]) -> None:
        ...


class HttpDocumentStore:
    """JSON-over-HTTP document store client.

    Documents live at ``{endpoint}/{collection}/{document_id}``. ``GET``
    returns the document (``404`` when it does not exist) and ``PATCH``
    upserts it with merge semantics.
    """

    def __init__(self, endpoint: str, *, token: Optional[str] = None, timeout: float = data_manager.DEFAULT_REMOTE_TIMEOUT):
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _url(self, collection: str, document_id: str) -> str:
        return f"{self.endpoint}/{quote(collection, safe='')}/{quote(document_id, safe='')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def fetch(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        req = Request(self._url(collection, document_id), headers=self._headers(), method="GET")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            if exc.code == 404:
                return None
            raise RemoteSyncError(f"GET {collection}/{document_id} failed with HTTP {exc.code}") from exc
        except (URLError, HTTPException, OSError, ValueError) as exc:
            raise RemoteSyncError(f"GET {collection}/{document_id} failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise RemoteSyncError(f"GET {collection}/{document_id} returned a non-object document")
        return payload

    def upsert(self, collection: str, document_id: str, payload: Mapping[str, Any]) -> None:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = Request(self._url(collection, document_id), data=data, headers=self._headers(), method="PATCH")
        req.add_header("Content-Type", "application/json")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                resp.read()
        except HTTPError as exc:
            raise RemoteSyncError(f"PATCH {collection}/{document_id} failed with HTTP {exc.code}") from exc
        except (URLError, HTTPException, OSError) as exc:
            raise RemoteSyncError(f"PATCH {collection}/{document_id} failed: {exc}") from exc


@dataclass
class OutboxEntry:
    """A pending remote write. Only the latest snapshot per document is kept."""

    collection: str
    document_id: str
    payload: Dict[str, Any]
    enqueued_at: str
    attempts: int = 0
    next_attempt_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.collection, self.document_id)

    def is_due(self, now: datetime) -> bool:
        if self.next_attempt_at is None:
            return True
        return datetime.fromisoformat(self.next_attempt_at) <= now


@dataclass(frozen=True)
class DrainResult:
    sent: int = 0
    failed: int = 0
    deferred: int = 0


class SyncOutbox:
    """File-backed queue of pending remote writes."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: List[OutboxEntry] = self._load()

    def _load(self) -> List[OutboxEntry]:
        try:
            raw = data_manager.read_json_document(self.path)
        except (OSError, ValueError) as exc:
            log.error("Unable to read sync outbox '%s': %s", self.path, exc)
            return []
        if not isinstance(raw, list):
            return []
        entries: List[OutboxEntry] = []
        for item in raw:
            try:
                entries.append(OutboxEntry(**item))
            except TypeError as exc:
                log.error("Dropping malformed outbox entry: %s", exc)
        return entries

    def _flush(self) -> None:
        try:
            data_manager.write_json_document(self.path, [asdict(entry) for entry in self._entries])
        except OSError as exc:
            log.error("Unable to persist sync outbox '%s': %s", self.path, exc)

    def entries(self) -> List[OutboxEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, collection: str, document_id: str, payload: Mapping[str, Any], *, now: Optional[datetime] = None) -> OutboxEntry:
        """Queue ``payload`` for upload, replacing any older pending snapshot.

        A replaced snapshot is superseded entirely, so its retry schedule is
        reset as well.
        """

        now = now or datetime.now(UTC)
        entry = OutboxEntry(
            collection=collection,
            document_id=document_id,
            payload=dict(payload),
            enqueued_at=now.isoformat(),
        )
        self._entries = [existing for existing in self._entries if existing.key != entry.key]
        self._entries.append(entry)
        self._flush()
        log.debug("Queued remote write for %s/%s (%d pending)", collection, document_id, len(self._entries))
        return entry

    def discard(self, collection: str, document_id: str) -> bool:
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry.key != (collection, document_id)]
        if len(self._entries) != before:
            self._flush()
            return True
        return False

    def mark_sent(self, entry: OutboxEntry) -> None:
        self._entries = [existing for existing in self._entries if existing is not entry]
        self._flush()

    def mark_failed(
        self,
        entry: OutboxEntry,
        error: str,
        *,
        now: datetime,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        """Record a failed attempt and schedule the next one.

        The delay doubles with every attempt, starting at ``base_delay``
        seconds and capped at ``max_delay``.
        """

        entry.attempts += 1
        delay = min(max_delay, base_delay * (2 ** (entry.attempts - 1)))
        entry.next_attempt_at = (now + timedelta(seconds=delay)).isoformat()
        entry.last_error = error
        self._flush()


@dataclass
class RemoteMirror:
    """Coordinates pulls from and pushes to a remote document store."""

    store: DocumentStore
    outbox: SyncOutbox
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    _confirmed: Set[Tuple[str, str]] = field(default_factory=set, repr=False)

    def is_confirmed(self, collection: str, document_id: str) -> bool:
        return (collection, document_id) in self._confirmed

    def pull(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a remote document, confirming it for later pushes.

        Returns ``None`` both when the document does not exist yet and when
        the fetch failed; only a completed fetch unlocks pushes.
        """

        try:
            payload = self.store.fetch(collection, document_id)
        except RemoteSyncError as exc:
            log.error("Error fetching %s/%s from remote: %s", collection, document_id, exc)
            return None
        self._confirmed.add((collection, document_id))
        log.info(
            "Remote state confirmed for %s/%s (%s)",
            collection,
            document_id,
            "document found" if payload is not None else "no document yet",
        )
        return payload

    def push(self, collection: str, document_id: str, payload: Mapping[str, Any]) -> None:
        self.outbox.enqueue(collection, document_id, payload)

    def forget_pending(self, collection: str, document_id: str) -> None:
        if self.outbox.discard(collection, document_id):
            log.info("Discarded pending write for %s/%s superseded by remote state", collection, document_id)

    def drain(self, *, now: Optional[datetime] = None) -> DrainResult:
        """Attempt every due outbox entry once.

        Entries whose document has not been pulled in this process, or whose
        backoff window has not elapsed, are deferred. Failures are logged and
        rescheduled; they never propagate.
        """

        now = now or datetime.now(UTC)
        sent = failed = deferred = 0
        for entry in self.outbox.entries():
            if not self.is_confirmed(entry.collection, entry.document_id) or not entry.is_due(now):
                deferred += 1
                continue
            try:
                self.store.upsert(entry.collection, entry.document_id, entry.payload)
            except RemoteSyncError as exc:
                failed += 1
                self.outbox.mark_failed(entry, str(exc), now=now, base_delay=self.base_delay, max_delay=self.max_delay)
                log.error(
                    "Error syncing %s/%s to remote (attempt %d): %s",
                    entry.collection,
                    entry.document_id,
                    entry.attempts,
                    exc,
                )
                continue
            sent += 1
            self.outbox.mark_sent(entry)
            log.info("Synced %s/%s to remote", entry.collection, entry.document_id)
        return DrainResult(sent=sent, failed=failed, deferred=deferred)


def build_mirror(settings: data_manager.ConfigSettings) -> Optional[RemoteMirror]:
    """Create the mirror described by ``settings``; ``None`` when disabled."""

    if settings.remote is None:
        return None
    store = HttpDocumentStore(
        settings.remote.endpoint,
        token=settings.remote.token,
        timeout=settings.remote.timeout,
    )
    outbox = SyncOutbox(data_manager.document_path(settings.data_dir, OUTBOX_KEY))
    return RemoteMirror(store=store, outbox=outbox)
