from __future__ import annotations

import secrets
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Protocol

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from zeitnachweis.errors import ApiError, AuthError
from zeitnachweis.settings import get_settings

# hex_sha256 only verifies hashes written by the previous deployment; they are
# upgraded to bcrypt on the next successful login.
pwd_context = CryptContext(schemes=["bcrypt", "hex_sha256"], deprecated=["hex_sha256"])
bearer_scheme = HTTPBearer(auto_error=False)

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)
_MAX_ATTEMPTS = 10
_ATTEMPT_WINDOW = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _cleanup_attempts(ip: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[ip]
    threshold = now - _ATTEMPT_WINDOW
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(ip, None)


def ensure_login_attempt_allowed(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        queue = _FAILED_ATTEMPTS.get(ip, deque())
        if len(queue) >= _MAX_ATTEMPTS:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Zu viele fehlgeschlagene Anmeldeversuche. Bitte später erneut versuchen.",
            )


def register_login_failure(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        _FAILED_ATTEMPTS[ip].append(now)


def register_login_success(ip: str) -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.pop(ip, None)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def password_needs_rehash(password_hash: str) -> bool:
    try:
        return pwd_context.needs_update(password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return True


class SessionStore(Protocol):
    def insert(self, token: str) -> None: ...

    def lookup(self, token: str) -> bool: ...

    def expire(self, token: str) -> None: ...


class InMemorySessionStore:
    """Process-local admin session tokens.

    Only valid for a single-instance deployment; every restart logs all
    admins out.
    """

    def __init__(self, ttl: timedelta | None = None) -> None:
        self.ttl = ttl
        self._lock = threading.Lock()
        self._issued_at: dict[str, datetime] = {}

    def insert(self, token: str) -> None:
        with self._lock:
            self._issued_at[token] = _utcnow()

    def lookup(self, token: str) -> bool:
        with self._lock:
            issued_at = self._issued_at.get(token)
            if issued_at is None:
                return False
            if self.ttl is not None and _utcnow() - issued_at > self.ttl:
                self._issued_at.pop(token, None)
                return False
            return True

    def expire(self, token: str) -> None:
        with self._lock:
            self._issued_at.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._issued_at)


@lru_cache
def get_session_store() -> SessionStore:
    ttl_minutes = get_settings().admin_session_ttl_minutes
    ttl = timedelta(minutes=ttl_minutes) if ttl_minutes else None
    return InMemorySessionStore(ttl=ttl)


def issue_session_token(store: SessionStore) -> str:
    token = secrets.token_hex(32)
    store.insert(token)
    return token


def is_valid_session_token(store: SessionStore, token: str | None) -> bool:
    candidate = (token or "").strip()
    if not candidate:
        return False
    return store.lookup(candidate)


def require_admin_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    store: SessionStore = Depends(get_session_store),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Nicht autorisiert.", code="MISSING_TOKEN")
    token = credentials.credentials
    if not is_valid_session_token(store, token):
        raise AuthError("Nicht autorisiert.", code="INVALID_TOKEN")

    request.state.actor = "admin"
    return token
