"""Email/password accounts and the active-session marker.

Credentials for every registered user live in one JSON document holding
``{email, passwordHash, lastLogin}`` records. Passwords are hashed with
bcrypt; records written by earlier releases that still hold the plain
password are accepted once and rehashed on that login.

The session marker is a small file containing the active email. Its presence
is all it takes to be signed in; there is no expiry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import bcrypt

from . import data_manager, log
from .constants import ADMIN_USERS_COLLECTION, ADMIN_USERS_DOCUMENT, SESSION_KEY, USERS_KEY
from .core_logic import BusinessRuleViolation
from .storage import Session
from .sync import RemoteMirror


BCRYPT_PREFIX = "$2"
MAX_PASSWORD_BYTES = 72
BCRYPT_ROUNDS = 12


class AuthenticationError(BusinessRuleViolation):
    """Raised when credentials are missing, wrong, or already registered."""


@dataclass
class UserRecord:
    email: str
    password_hash: str
    last_login: str

    def to_payload(self) -> Dict[str, Any]:
        return {"email": self.email, "passwordHash": self.password_hash, "lastLogin": self.last_login}

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "UserRecord":
        return cls(
            email=str(raw["email"]),
            password_hash=str(raw.get("passwordHash") or ""),
            last_login=str(raw.get("lastLogin") or ""),
        )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def check_password(password: str, stored: str) -> bool:
    """Compare ``password`` with a bcrypt hash or a legacy plain value."""

    if not stored.startswith(BCRYPT_PREFIX):
        return password == stored
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    except ValueError as exc:
        log.error("Stored password hash is unusable: %s", exc)
        return False


def _require_credentials(email: str, password: str) -> str:
    email = email.strip()
    if not email or not password:
        log.warning("Rejected credentials: email and password required")
        raise AuthenticationError("Email and password are required")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise AuthenticationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return email


class AuthGateway:
    """Register, sign in and manage the active session for ``data_dir``."""

    def __init__(self, data_dir: Path, *, mirror: Optional[RemoteMirror] = None):
        self.data_dir = Path(data_dir)
        self.mirror = mirror
        self._pulled = False

    @property
    def users_path(self) -> Path:
        return data_manager.document_path(self.data_dir, USERS_KEY)

    @property
    def session_path(self) -> Path:
        return self.data_dir / SESSION_KEY

    # -- credential document -----------------------------------------------

    def _pull_remote(self) -> None:
        if self.mirror is None or self._pulled:
            return
        self._pulled = True
        payload = self.mirror.pull(ADMIN_USERS_COLLECTION, ADMIN_USERS_DOCUMENT)
        if not payload or not isinstance(payload.get("users"), list):
            return
        try:
            data_manager.write_json_document(self.users_path, payload["users"])
        except OSError as exc:
            log.error("Unable to store remote credentials: %s", exc)
            return
        self.mirror.forget_pending(ADMIN_USERS_COLLECTION, ADMIN_USERS_DOCUMENT)
        log.info("Credentials replaced by remote copy (%d users)", len(payload["users"]))

    def load_users(self) -> List[UserRecord]:
        self._pull_remote()
        try:
            raw = data_manager.read_json_document(self.users_path)
        except (OSError, ValueError) as exc:
            log.error("Unable to read credentials '%s': %s", self.users_path, exc)
            return []
        if not isinstance(raw, list):
            return []
        users: List[UserRecord] = []
        for entry in raw:
            try:
                users.append(UserRecord.from_payload(entry))
            except (KeyError, TypeError) as exc:
                log.error("Dropping malformed credential record: %r", exc)
        return users

    def _save_users(self, users: List[UserRecord]) -> None:
        payload = [user.to_payload() for user in users]
        data_manager.write_json_document(self.users_path, payload)
        if self.mirror is not None:
            self.mirror.push(ADMIN_USERS_COLLECTION, ADMIN_USERS_DOCUMENT, {"users": payload})

    @staticmethod
    def _find(users: List[UserRecord], email: str) -> Optional[UserRecord]:
        wanted = email.lower()
        for user in users:
            if user.email.lower() == wanted:
                return user
        return None

    # -- session marker ----------------------------------------------------

    def current_session(self) -> Session:
        """Return the signed-in session, or the guest session."""

        try:
            identity = self.session_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return Session()
        return Session(identity or None)

    def _start_session(self, email: str) -> Session:
        data_manager.write_document(self.session_path, email)
        log.info("Signed in as '%s'", email)
        return Session(email)

    def logout(self) -> None:
        data_manager.remove_document(self.session_path)
        log.info("Signed out")

    # -- operations --------------------------------------------------------

    def register(self, email: str, password: str) -> Session:
        """Create an account and sign it in.

        Raises:
            AuthenticationError: If details are missing or the email (ignoring
                case) is already registered.
        """

        email = _require_credentials(email, password)
        users = self.load_users()
        if self._find(users, email) is not None:
            log.warning("Registration rejected: '%s' already exists", email)
            raise AuthenticationError("An account with this email already exists")
        users.append(UserRecord(email=email, password_hash=hash_password(password), last_login=datetime.now(UTC).isoformat()))
        self._save_users(users)
        log.info("Registered user '%s'", email)
        return self._start_session(email)

    def login(self, email: str, password: str) -> Session:
        """Sign in; the email matches case-insensitively.

        Raises:
            AuthenticationError: If the email is unknown or the password wrong.
        """

        email = _require_credentials(email, password)
        users = self.load_users()
        user = self._find(users, email)
        if user is None or not check_password(password, user.password_hash):
            log.warning("Login failed for '%s'", email)
            raise AuthenticationError("Invalid email or password")

        if not user.password_hash.startswith(BCRYPT_PREFIX):
            user.password_hash = hash_password(password)
            log.info("Upgraded stored password of '%s' to bcrypt", user.email)
        user.last_login = datetime.now(UTC).isoformat()
        self._save_users(users)
        return self._start_session(user.email)

    def verify_current_password(self, password: str) -> bool:
        session = self.current_session()
        if not session.authenticated:
            return False
        user = self._find(self.load_users(), session.identity)
        return user is not None and check_password(password, user.password_hash)

    def update_password(self, current_password: str, new_password: str) -> None:
        """Change the signed-in user's password.

        Raises:
            AuthenticationError: If nobody is signed in, the current password
                is wrong, or the new one is empty.
        """

        session = self.current_session()
        if not session.authenticated:
            raise AuthenticationError("Not signed in")
        _require_credentials(session.identity, new_password)
        users = self.load_users()
        user = self._find(users, session.identity)
        if user is None or not check_password(current_password, user.password_hash):
            log.warning("Password change rejected for '%s'", session.identity)
            raise AuthenticationError("Current password is incorrect")
        user.password_hash = hash_password(new_password)
        self._save_users(users)
        log.info("Password updated for '%s'", user.email)
