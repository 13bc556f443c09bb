"""Authenticated session record backed by a persistent key-value store."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import ValidationError

from .config import SyncConfig
from .errors import InvalidCredentialsError, SessionExpiredError
from .storage import (
    EXPIRES_AT_KEY,
    REFRESH_KEY,
    ROLE_KEY,
    SESSION_KEYS,
    TOKEN_KEY,
    USER_KEY,
    KeyValueStore,
)
from .types import Session, UserRecord

logger = logging.getLogger("runnersync.session")

MIN_TOKEN_LENGTH = 10

RefreshHook = Callable[[], Awaitable[Any]]


def _coerce_user(user: UserRecord | Mapping[str, Any] | None) -> UserRecord | None:
    if user is None:
        return None
    if isinstance(user, UserRecord):
        return user
    if isinstance(user, Mapping):
        try:
            return UserRecord.model_validate(dict(user))
        except ValidationError:
            return None
    return None


def _parse_expiry(raw: str | None) -> float:
    value = float(raw or "")
    if not math.isfinite(value):
        raise ValueError(f"Session expiry is not a finite timestamp: {raw!r}")
    return value


class SessionStore:
    """Owns the session record and its persisted copy.

    Expiry is lazy: it is only enforced when :meth:`is_authenticated` is
    queried. Saving a session arms a one-shot timer that runs the bound refresh
    hook ``refresh_lead_time`` seconds after the save.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        privileged_role: str = "admin",
        session_ttl: float = 3600.0,
        refresh_lead_time: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._privileged_role = privileged_role.casefold()
        self._session_ttl = session_ttl
        self._refresh_lead_time = refresh_lead_time
        self._clock = clock
        self._session = Session()
        self._refresh_hook: RefreshHook | None = None
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._refresh_task: asyncio.Task[Any] | None = None

    @classmethod
    def from_config(cls, config: SyncConfig, store: KeyValueStore) -> SessionStore:
        return cls(
            store,
            privileged_role=config.privileged_role,
            session_ttl=config.session_ttl,
            refresh_lead_time=config.token_refresh_lead_time,
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def access_token(self) -> str | None:
        return self._session.access_token

    @property
    def refresh_token(self) -> str | None:
        return self._session.refresh_token

    @property
    def user(self) -> UserRecord | None:
        return self._session.user

    @property
    def refresh_timer_armed(self) -> bool:
        return self._refresh_handle is not None

    def _role_allowed(self, role: str | None) -> bool:
        return isinstance(role, str) and role.casefold() == self._privileged_role

    def _validate(
        self, token: Any, user: UserRecord | Mapping[str, Any] | None
    ) -> tuple[UserRecord | None, str | None]:
        if not isinstance(token, str) or len(token) < MIN_TOKEN_LENGTH:
            return None, "invalid_token"
        record = _coerce_user(user)
        if record is None or not record.email or not record.role:
            return None, "incomplete_user"
        if not self._role_allowed(record.role):
            return None, "role_not_allowed"
        return record, None

    def rejection_reason(self, token: Any, user: UserRecord | Mapping[str, Any] | None) -> str | None:
        return self._validate(token, user)[1]

    def save(
        self,
        token: Any,
        user: UserRecord | Mapping[str, Any] | None,
        refresh_token: str | None = None,
    ) -> bool:
        record, reason = self._validate(token, user)
        if record is None or record.role is None:
            logger.warning("session_save_rejected", extra={"reason": reason})
            return False

        expires_at = self._clock() + self._session_ttl
        self._store.set(TOKEN_KEY, token)
        self._store.set(ROLE_KEY, record.role)
        self._store.set(USER_KEY, json.dumps(record.model_dump(mode="json", exclude_none=True)))
        if refresh_token:
            self._store.set(REFRESH_KEY, refresh_token)
        else:
            self._store.remove(REFRESH_KEY)
        self._store.set(EXPIRES_AT_KEY, repr(expires_at))

        session = self._session
        session.access_token = token
        session.refresh_token = refresh_token or None
        session.role = record.role
        session.user = record
        session.expires_at = expires_at
        session.authenticated = True
        logger.info("session_saved", extra={"user": record.email, "token": session.token_preview()})

        self.arm_refresh_timer()
        return True

    def save_or_raise(
        self,
        token: Any,
        user: UserRecord | Mapping[str, Any] | None,
        refresh_token: str | None = None,
    ) -> Session:
        reason = self.rejection_reason(token, user)
        if reason is not None:
            raise InvalidCredentialsError(f"Session rejected: {reason}", extra={"reason": reason})
        self.save(token, user, refresh_token)
        return self._session

    def clear(self) -> None:
        for key in SESSION_KEYS:
            self._store.remove(key)
        session = self._session
        session.access_token = None
        session.refresh_token = None
        session.role = None
        session.user = None
        session.expires_at = None
        session.authenticated = False
        self.cancel_refresh_timer()
        logger.info("session_cleared")

    def is_authenticated(self) -> bool:
        session = self._session
        if not (session.authenticated and session.access_token and session.role and session.user):
            return False
        if not self._role_allowed(session.role):
            return False
        if len(session.access_token) < MIN_TOKEN_LENGTH:
            return False
        if session.expires_at is None or session.is_expired(self._clock()):
            logger.info("session_expired", extra={"expires_at": session.expires_at})
            self.clear()
            return False
        return True

    def require_authenticated(self) -> Session:
        if not self.is_authenticated():
            raise SessionExpiredError()
        return self._session

    def auth_header(self) -> dict[str, str]:
        token = self._session.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def restore(self) -> bool:
        """Load a persisted session; anything missing or malformed is wiped."""
        token = self._store.get(TOKEN_KEY)
        if token is None:
            return False
        raw_user = self._store.get(USER_KEY)
        raw_expiry = self._store.get(EXPIRES_AT_KEY)
        try:
            user = UserRecord.model_validate(json.loads(raw_user or ""))
            expires_at = _parse_expiry(raw_expiry)
        except (ValueError, ValidationError):
            logger.warning("session_restore_malformed")
            self.clear()
            return False

        session = self._session
        session.access_token = token
        session.refresh_token = self._store.get(REFRESH_KEY)
        session.role = self._store.get(ROLE_KEY) or user.role
        session.user = user
        session.expires_at = expires_at
        session.authenticated = True
        if not self.is_authenticated():
            self.clear()
            return False
        logger.info("session_restored", extra={"user": user.email})
        self.arm_refresh_timer()
        return True

    def set_refresh_hook(self, hook: RefreshHook | None) -> None:
        self._refresh_hook = hook

    def arm_refresh_timer(self) -> None:
        self.cancel_refresh_timer()
        if self._refresh_hook is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("refresh_timer_skipped", extra={"reason": "no_running_loop"})
            return
        # Fires lead-time seconds from now, not lead-time before expiry.
        self._refresh_handle = loop.call_later(self._refresh_lead_time, self._fire_refresh)

    def cancel_refresh_timer(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def _fire_refresh(self) -> None:
        self._refresh_handle = None
        hook = self._refresh_hook
        if hook is None:
            return
        logger.debug("refresh_timer_fired")
        task = asyncio.ensure_future(hook())
        task.add_done_callback(self._on_refresh_done)
        self._refresh_task = task

    def _on_refresh_done(self, task: asyncio.Task[Any]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("scheduled_refresh_failed", exc_info=exc)

    async def dispose(self) -> None:
        self.cancel_refresh_timer()
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


__all__ = ["MIN_TOKEN_LENGTH", "RefreshHook", "SessionStore"]
