"""Persistence gateway for the StockFlow aggregate.

The whole application state for one store identity lives in a single JSON
document. :class:`StateStore` loads and saves that document for an explicit
:class:`Session`, notifies subscribers about changes, and hands every saved
snapshot to the optional :class:`~stockflow.sync.RemoteMirror`.

Writes can be made conditional on the document not having changed since it
was loaded (``if_unchanged=True``). The check compares the etag stamped on the
loaded :class:`~stockflow.models.AppState` with a hash of the bytes currently
stored and raises :class:`StaleStateError` on mismatch.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from . import data_manager, log
from .constants import STORES_COLLECTION
from .models import AppState
from .sync import RemoteMirror


ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"
ORIGIN_EXTERNAL = "external"


class StaleStateError(Exception):
    """Raised when a conditional save finds the stored document changed."""


@dataclass(frozen=True)
class Session:
    """The identity whose aggregate a gateway call operates on.

    ``identity`` is ``None`` for the guest session.
    """

    identity: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.identity)

    @property
    def storage_key(self) -> str:
        return data_manager.storage_key(self.identity)


@dataclass(frozen=True)
class ChangeEvent:
    key: str
    origin: str


Listener = Callable[[ChangeEvent], None]


class StateStore:
    """Load, save and watch aggregates stored under ``data_dir``."""

    def __init__(self, data_dir: Path, *, mirror: Optional[RemoteMirror] = None):
        self.data_dir = Path(data_dir)
        self.mirror = mirror
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._pulled: Set[str] = set()
        self._seen: Dict[str, Optional[str]] = {}

    # -- notifications -----------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self, key: str, origin: str) -> None:
        event = ChangeEvent(key=key, origin=origin)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Change listener failed for %s (%s)", key, origin)

    # -- loading -----------------------------------------------------------

    def path_for(self, session: Session) -> Path:
        return data_manager.document_path(self.data_dir, session.storage_key)

    def load(self, session: Session) -> AppState:
        """Return the stored aggregate for ``session`` or the default one.

        The first load of an authenticated identity in this process pulls the
        remote copy first. Unreadable or malformed documents never raise:
        the default aggregate is returned instead and the problem is logged.
        A malformed document's etag is still stamped on the default so a
        conditional save can replace it.
        """

        with self._lock:
            if session.authenticated and self.mirror is not None and session.storage_key not in self._pulled:
                self.pull_remote(session)

            path = self.path_for(session)
            try:
                data = data_manager.read_document_bytes(path)
            except OSError as exc:
                log.error("Unable to read stored state '%s': %s", path, exc)
                return data_manager.default_state()

            if data is None:
                self._seen[session.storage_key] = None
                return data_manager.default_state()

            etag = data_manager.compute_etag(data)
            self._seen[session.storage_key] = etag
            try:
                return data_manager.deserialize_state(data.decode("utf-8"))
            except ValueError as exc:
                log.error("Stored state '%s' is malformed, using defaults: %s", path, exc)
                return replace(data_manager.default_state(), etag=etag)

    def pull_remote(self, session: Session) -> bool:
        """Fetch the remote aggregate and adopt it when it differs.

        Returns ``True`` when the local document was replaced.
        """

        if self.mirror is None or not session.authenticated:
            return False

        with self._lock:
            key = session.storage_key
            self._pulled.add(key)
            payload = self.mirror.pull(STORES_COLLECTION, session.identity)
            if payload is None:
                return False
            try:
                remote_state = data_manager.payload_to_state(payload)
            except ValueError as exc:
                log.error("Ignoring malformed remote state for %s: %s", session.identity, exc)
                return False

            text = data_manager.serialize_state(remote_state)
            path = self.path_for(session)
            try:
                if data_manager.read_document_bytes(path) == text.encode("utf-8"):
                    return False
                data_manager.write_document(path, text)
            except OSError as exc:
                log.error("Unable to store remote state for %s: %s", session.identity, exc)
                return False

            self._seen[key] = data_manager.compute_etag(text)
            self.mirror.forget_pending(STORES_COLLECTION, session.identity)
            log.info("Local state for %s replaced by remote copy", session.identity)
        self._broadcast(key, ORIGIN_REMOTE)
        return True

    # -- saving ------------------------------------------------------------

    def save(self, session: Session, state: AppState, *, if_unchanged: bool = False) -> AppState:
        """Persist ``state`` wholesale under the session's key.

        Args:
            session (Session): Identity whose document is written.
            state (AppState): Aggregate to store.
            if_unchanged (bool): When ``True`` the write only happens if the
                stored document still matches ``state.etag``.

        Returns:
            AppState: ``state`` stamped with the etag of the written bytes. When
                the storage layer fails the error is logged and ``state`` is
                returned unchanged.

        Raises:
            StaleStateError: If ``if_unchanged`` is set and the stored
                document was modified since ``state`` was loaded.
        """

        key = session.storage_key
        path = self.path_for(session)
        text = data_manager.serialize_state(state)

        with self._lock:
            try:
                if if_unchanged:
                    current_etag = data_manager.document_etag(path)
                    if current_etag != state.etag:
                        log.warning("Stored state '%s' changed since it was loaded", path)
                        raise StaleStateError(f"Stored state for {key} changed since it was loaded")
                data_manager.write_document(path, text)
            except OSError as exc:
                log.error("Unable to save state '%s': %s", path, exc)
                return state

            etag = data_manager.compute_etag(text)
            self._seen[key] = etag
            saved = replace(state, etag=etag)

        log.debug("Saved state for %s (%d bytes)", key, len(text))
        self._broadcast(key, ORIGIN_LOCAL)
        if session.authenticated and self.mirror is not None:
            self.mirror.push(STORES_COLLECTION, session.identity, data_manager.state_to_payload(saved))
        return saved

    # -- maintenance -------------------------------------------------------

    def poll_external_changes(self, session: Session) -> bool:
        """Detect writes made to the session's document by another process.

        Returns ``True`` and broadcasts an ``external`` event when the stored
        bytes differ from what this process last loaded or saved.
        """

        key = session.storage_key
        path = self.path_for(session)
        with self._lock:
            try:
                etag = data_manager.document_etag(path)
            except OSError as exc:
                log.error("Unable to poll stored state '%s': %s", path, exc)
                return False
            if key in self._seen and self._seen[key] == etag:
                return False
            changed = key in self._seen
            self._seen[key] = etag

        if changed:
            log.info("Stored state for %s was changed by another process", key)
            self._broadcast(key, ORIGIN_EXTERNAL)
        return changed

    def reset(self, session: Session) -> None:
        """Delete the stored aggregate; the next load returns the default."""

        path = self.path_for(session)
        with self._lock:
            data_manager.remove_document(path)
            self._seen[session.storage_key] = None
        log.info("Stored state for %s removed", session.storage_key)
        self._broadcast(session.storage_key, ORIGIN_LOCAL)

    def flush_mirror(self):
        """Drain pending remote writes; ``None`` when no mirror is configured."""

        if self.mirror is None:
            return None
        return self.mirror.drain()
