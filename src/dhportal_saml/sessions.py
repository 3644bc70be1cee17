"""Authentication session tracking, pending requests and replay detection."""

from __future__ import annotations
import logging
import secrets
import sqlite3
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field
from dhportal_saml.config import SessionSettings
from dhportal_saml.errors import (
    ReplayError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStateError,
    UnsolicitedResponseError,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


class SessionState(StrEnum):
    """Lifecycle states of an authentication session."""

    UNAUTHENTICATED = "unauthenticated"
    PENDING_AUTHN = "pending_authn"
    AUTHENTICATED = "authenticated"
    PENDING_LOGOUT = "pending_logout"
    TERMINATED = "terminated"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset(
        {
            SessionState.PENDING_AUTHN,
            SessionState.AUTHENTICATED,
            SessionState.TERMINATED,
        }
    ),
    SessionState.PENDING_AUTHN: frozenset(
        {
            SessionState.PENDING_AUTHN,
            SessionState.AUTHENTICATED,
            SessionState.UNAUTHENTICATED,
            SessionState.TERMINATED,
        }
    ),
    SessionState.AUTHENTICATED: frozenset(
        {SessionState.PENDING_LOGOUT, SessionState.TERMINATED}
    ),
    SessionState.PENDING_LOGOUT: frozenset(
        {SessionState.AUTHENTICATED, SessionState.TERMINATED}
    ),
    SessionState.TERMINATED: frozenset(),
}


class Session(BaseModel):
    """Authentication state bound to one browser session."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    auth_source: str
    state: SessionState = SessionState.UNAUTHENTICATED
    created_at: datetime
    expires_at: datetime
    attributes: dict[str, list[str]] = Field(default_factory=dict)
    name_id: str | None = None
    name_id_format: str | None = None
    session_index: str | None = None
    idp_entity_id: str | None = None
    pending_request_id: str | None = None
    pending_logout_id: str | None = None
    relay_state: str | None = None

    @property
    def is_authenticated(self) -> bool:
        """Return True only for fully authenticated sessions."""
        return self.state is SessionState.AUTHENTICATED

    def is_expired(self, now: datetime) -> bool:
        """Return True once ``now`` reaches the expiry time."""
        return now >= self.expires_at


@dataclass(slots=True)
class _KeyLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class BaseSessionStore:
    """State machine and locking shared by the session store backends.

    Subclasses only provide record persistence; every mutation goes through
    :meth:`transition`, which holds the per-session lock for the whole
    read-check-write sequence.
    """

    def __init__(
        self,
        *,
        duration_seconds: int,
        clock: Clock | None = None,
    ) -> None:
        """Configure the maximum session lifetime and the time source."""
        self._duration = timedelta(seconds=duration_seconds)
        self._clock = clock or utcnow
        self._locks: dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def duration(self) -> timedelta:
        """Maximum lifetime of a session from its creation."""
        return self._duration

    @contextmanager
    def _key_lock(self, session_id: str) -> Iterator[None]:
        """Hold the per-session lock; the entry lives only while in use."""
        with self._locks_guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[session_id]

    def create(self, auth_source: str) -> Session:
        """Create and persist a new unauthenticated session."""
        now = self._clock()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            auth_source=auth_source,
            created_at=now,
            expires_at=now + self._duration,
        )
        self._save(session)
        logger.debug("Created session %s...", session.session_id[:8])
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> Session:
        """Return the session, enforcing expiry on every read."""
        with self._key_lock(session_id):
            return self._checked(session_id).model_copy(deep=True)

    def _checked(self, session_id: str) -> Session:
        session = self._load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id[:8]}... was not found")
        if session.is_expired(self._clock()):
            self._delete(session_id)
            logger.info(
                "Session expired",
                extra={"event": "session_expired", "auth_source": session.auth_source},
            )
            raise SessionExpiredError("Session has expired")
        return session

    def transition(
        self,
        session_id: str,
        target: SessionState,
        *,
        expected: Iterable[SessionState] | None = None,
        changes: Mapping[str, Any] | None = None,
    ) -> Session:
        """Atomically move a session to ``target`` and apply ``changes``.

        ``expected`` restricts the states the session may currently be in;
        this is the compare half of the compare-and-swap.
        """
        with self._key_lock(session_id):
            session = self._checked(session_id)
            if expected is not None and session.state not in set(expected):
                msg = f"Session is {session.state.value}, cannot move to {target.value}"
                raise SessionStateError(msg)
            if target not in _TRANSITIONS[session.state]:
                msg = f"Transition {session.state.value} -> {target.value} is not allowed"
                raise SessionStateError(msg)
            update = dict(changes or {})
            update["state"] = target
            updated = session.model_copy(update=update, deep=True)
            if target is SessionState.TERMINATED:
                self._delete(session_id)
            else:
                self._save(updated)
            return updated.model_copy(deep=True)

    def begin_authentication(
        self, session_id: str, *, request_id: str, relay_state: str | None
    ) -> Session:
        """Record the outstanding AuthnRequest and enter ``PENDING_AUTHN``."""
        return self.transition(
            session_id,
            SessionState.PENDING_AUTHN,
            expected=(SessionState.UNAUTHENTICATED, SessionState.PENDING_AUTHN),
            changes={"pending_request_id": request_id, "relay_state": relay_state},
        )

    def complete_authentication(
        self,
        session_id: str,
        *,
        request_id: str | None,
        attributes: Mapping[str, list[str]],
        name_id: str | None,
        name_id_format: str | None,
        session_index: str | None,
        idp_entity_id: str,
        not_on_or_after: datetime | None = None,
    ) -> Session:
        """Enter ``AUTHENTICATED``; the lifetime restarts at authentication time."""
        now = self._clock()
        expires_at = now + self._duration
        if not_on_or_after is not None and not_on_or_after < expires_at:
            expires_at = not_on_or_after
        allowed = (SessionState.PENDING_AUTHN,)
        if request_id is None:
            allowed = (SessionState.PENDING_AUTHN, SessionState.UNAUTHENTICATED)
        with self._key_lock(session_id):
            session = self._checked(session_id)
            if request_id is not None and session.pending_request_id != request_id:
                raise SessionStateError("Session is waiting for a different request")
            return self.transition(
                session_id,
                SessionState.AUTHENTICATED,
                expected=allowed,
                changes={
                    "attributes": {k: list(v) for k, v in attributes.items()},
                    "name_id": name_id,
                    "name_id_format": name_id_format,
                    "session_index": session_index,
                    "idp_entity_id": idp_entity_id,
                    "pending_request_id": None,
                    "created_at": now,
                    "expires_at": expires_at,
                },
            )

    def fail_authentication(self, session_id: str, request_id: str | None = None) -> None:
        """Return a pending session to ``UNAUTHENTICATED`` after a failed login."""
        try:
            with self._key_lock(session_id):
                session = self._checked(session_id)
                if session.state is not SessionState.PENDING_AUTHN:
                    return
                if request_id is not None and session.pending_request_id != request_id:
                    return
                self._save(
                    session.model_copy(
                        update={
                            "state": SessionState.UNAUTHENTICATED,
                            "pending_request_id": None,
                            "attributes": {},
                        },
                        deep=True,
                    )
                )
        except (SessionNotFoundError, SessionExpiredError):
            return

    def begin_logout(self, session_id: str, *, logout_id: str) -> Session:
        """Record the outstanding LogoutRequest and enter ``PENDING_LOGOUT``."""
        return self.transition(
            session_id,
            SessionState.PENDING_LOGOUT,
            expected=(SessionState.AUTHENTICATED,),
            changes={"pending_logout_id": logout_id},
        )

    def terminate(self, session_id: str) -> Session:
        """End the session from any live state."""
        return self.transition(session_id, SessionState.TERMINATED)

    def find_by_subject(
        self, idp_entity_id: str, name_id: str, session_index: str | None = None
    ) -> list[Session]:
        """Return live sessions authenticated for the given subject."""
        now = self._clock()
        matches = []
        for session in self._iter():
            if session.is_expired(now) or session.idp_entity_id != idp_entity_id:
                continue
            if session.name_id != name_id:
                continue
            if session_index and session.session_index != session_index:
                continue
            matches.append(session.model_copy(deep=True))
        return matches

    def sweep(self) -> int:
        """Delete every expired session and return how many were removed."""
        now = self._clock()
        removed = 0
        for session in list(self._iter()):
            with self._key_lock(session.session_id):
                current = self._load(session.session_id)
                if current is None or not current.is_expired(now):
                    continue
                self._delete(session.session_id)
            removed += 1
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed

    def _load(self, session_id: str) -> Session | None:  # pragma: no cover
        raise NotImplementedError

    def _save(self, session: Session) -> None:  # pragma: no cover
        raise NotImplementedError

    def _delete(self, session_id: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def _iter(self) -> Iterable[Session]:  # pragma: no cover
        raise NotImplementedError


class InMemorySessionStore(BaseSessionStore):
    """Process-local session store."""

    def __init__(self, *, duration_seconds: int, clock: Clock | None = None) -> None:
        """Create an empty in-memory store."""
        super().__init__(duration_seconds=duration_seconds, clock=clock)
        self._records: MutableMapping[str, Session] = {}
        self._records_lock = threading.Lock()

    def __len__(self) -> int:
        """Return the number of stored sessions, expired ones included."""
        return len(self._records)

    def _load(self, session_id: str) -> Session | None:
        with self._records_lock:
            return self._records.get(session_id)

    def _save(self, session: Session) -> None:
        with self._records_lock:
            self._records[session.session_id] = session

    def _delete(self, session_id: str) -> None:
        with self._records_lock:
            self._records.pop(session_id, None)

    def _iter(self) -> Iterable[Session]:
        with self._records_lock:
            return list(self._records.values())


class SqliteSessionStore(BaseSessionStore):
    """Session store persisted in a SQLite database."""

    def __init__(
        self,
        path: str | Path,
        *,
        duration_seconds: int,
        clock: Clock | None = None,
    ) -> None:
        """Create (or open) the SQLite session database."""
        super().__init__(duration_seconds=duration_seconds, clock=clock)
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS saml_sessions (
                    id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_saml_sessions_expiry
                    ON saml_sessions(expires_at)
                """
            )
            conn.commit()

    def _load(self, session_id: str) -> Session | None:
        with self._lock, sqlite3.connect(self._path) as conn:
            row = conn.execute(
                "SELECT payload FROM saml_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return Session.model_validate_json(row[0])

    def _save(self, session: Session) -> None:
        with self._lock, sqlite3.connect(self._path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO saml_sessions (id, state, expires_at, payload)
                VALUES (?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    session.state.value,
                    session.expires_at.isoformat(),
                    session.model_dump_json(),
                ),
            )
            conn.commit()

    def _delete(self, session_id: str) -> None:
        with self._lock, sqlite3.connect(self._path) as conn:
            conn.execute("DELETE FROM saml_sessions WHERE id = ?", (session_id,))
            conn.commit()

    def _iter(self) -> Iterable[Session]:
        with self._lock, sqlite3.connect(self._path) as conn:
            rows = conn.execute(
                "SELECT payload FROM saml_sessions ORDER BY expires_at ASC"
            ).fetchall()
        return [Session.model_validate_json(row[0]) for row in rows]


def create_session_store(
    settings: SessionSettings, *, clock: Clock | None = None
) -> BaseSessionStore:
    """Instantiate the backend selected by ``STORE_TYPE``."""
    if settings.store_type == "sqlite":
        if not settings.sqlite_path:
            msg = "SQLite session store requires a database path"
            raise ValueError(msg)
        return SqliteSessionStore(
            settings.sqlite_path, duration_seconds=settings.duration, clock=clock
        )
    return InMemorySessionStore(duration_seconds=settings.duration, clock=clock)


RequestKind = Literal["authn", "logout"]


@dataclass(frozen=True, slots=True)
class PendingRequest:
    """An outstanding request awaiting its response."""

    request_id: str
    kind: RequestKind
    sp_entity_id: str
    idp_entity_id: str
    session_id: str | None
    relay_state: str | None
    created_at: datetime
    expires_at: datetime


class PendingRequestTable:
    """Outstanding request IDs with TTL and exactly-once consumption."""

    def __init__(self, *, ttl_seconds: int, clock: Clock | None = None) -> None:
        """Configure the request lifetime."""
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._pending: dict[str, PendingRequest] = {}
        self._consumed: OrderedDict[str, datetime] = OrderedDict()

    @property
    def ttl(self) -> timedelta:
        """Lifetime of a pending request."""
        return self._ttl

    def add(
        self,
        request_id: str,
        *,
        kind: RequestKind,
        sp_entity_id: str,
        idp_entity_id: str,
        session_id: str | None = None,
        relay_state: str | None = None,
    ) -> PendingRequest:
        """Register an outstanding request."""
        now = self._clock()
        request = PendingRequest(
            request_id=request_id,
            kind=kind,
            sp_entity_id=sp_entity_id,
            idp_entity_id=idp_entity_id,
            session_id=session_id,
            relay_state=relay_state,
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._purge(now)
            if request_id in self._pending or request_id in self._consumed:
                raise ValueError(f"Request ID {request_id} is already registered")
            self._pending[request_id] = request
        return request

    def peek(
        self, request_id: str, *, include_expired: bool = False
    ) -> PendingRequest | None:
        """Return the pending request without consuming it."""
        with self._lock:
            request = self._pending.get(request_id)
        if request is None:
            return None
        if not include_expired and self._clock() >= request.expires_at:
            return None
        return request

    def consume(self, request_id: str, *, kind: RequestKind = "authn") -> PendingRequest:
        """Remove and return the request; succeeds once per request ID."""
        now = self._clock()
        with self._lock:
            if request_id in self._consumed:
                raise ReplayError(f"Request {request_id} was already consumed")
            request = self._pending.get(request_id)
            if request is None or request.kind != kind:
                raise UnsolicitedResponseError(
                    f"Response does not answer an outstanding request ({request_id})"
                )
            del self._pending[request_id]
            self._consumed[request_id] = request.expires_at
        if now >= request.expires_at:
            raise UnsolicitedResponseError(f"Request {request_id} has expired")
        return request

    def discard(self, request_id: str) -> None:
        """Drop a pending request that can no longer be answered."""
        with self._lock:
            request = self._pending.pop(request_id, None)
            if request is not None:
                self._consumed[request_id] = request.expires_at

    def __len__(self) -> int:
        """Return the number of pending requests, expired ones included."""
        with self._lock:
            return len(self._pending)

    def purge(self) -> int:
        """Drop expired pending and consumed entries."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: datetime) -> int:
        expired = [rid for rid, req in self._pending.items() if now >= req.expires_at]
        for request_id in expired:
            del self._pending[request_id]
        # Consumed IDs are kept one extra TTL so late replays still read as replays.
        horizon = now - self._ttl
        while self._consumed:
            oldest_id, expires_at = next(iter(self._consumed.items()))
            if expires_at > horizon:
                break
            self._consumed.pop(oldest_id)
        return len(expired)


class AssertionReplayCache:
    """Remembers accepted assertion IDs until their validity ends."""

    def __init__(self, *, clock: Clock | None = None, max_entries: int = 100_000) -> None:
        """Create an empty cache bounded to ``max_entries`` IDs."""
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._seen: dict[str, datetime] = {}
        self._max_entries = max_entries

    def check_and_store(self, assertion_id: str, expires_at: datetime) -> None:
        """Record ``assertion_id`` or raise :class:`ReplayError` if seen."""
        now = self._clock()
        with self._lock:
            if len(self._seen) >= self._max_entries:
                self._seen = {
                    key: value for key, value in self._seen.items() if value > now
                }
            previous = self._seen.get(assertion_id)
            if previous is not None and previous > now:
                raise ReplayError(f"Assertion {assertion_id} was already used")
            self._seen[assertion_id] = expires_at


__all__ = [
    "AssertionReplayCache",
    "BaseSessionStore",
    "Clock",
    "InMemorySessionStore",
    "PendingRequest",
    "PendingRequestTable",
    "Session",
    "SessionState",
    "SqliteSessionStore",
    "create_session_store",
    "utcnow",
]
