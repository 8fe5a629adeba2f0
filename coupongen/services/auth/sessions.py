from __future__ import annotations

from dataclasses import dataclass, field
import logging
import secrets
import time
from typing import Any, Callable

from pydantic import ValidationError

from coupongen.domain.identity import Principal


logger = logging.getLogger(__name__)

PRINCIPAL_KEY = "principal"


@dataclass
class SessionState:
    # Server-side session record; the cookie only ever carries ``id``.
    id: str
    created_at: float
    expires_at: float
    data: dict[str, Any] = field(default_factory=dict)
    modified: bool = False

    @property
    def principal(self) -> Principal | None:
        raw = self.data.get(PRINCIPAL_KEY)
        if not raw:
            return None
        try:
            return Principal.model_validate(raw)
        except ValidationError:
            # Stored identities that no longer validate are treated as signed out.
            logger.warning("session_principal_invalid session_prefix=%s", self.id[:8])
            return None

    def set_principal(self, principal: Principal) -> None:
        self.data[PRINCIPAL_KEY] = principal.to_session()
        self.modified = True


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore:
    """In-process session map keyed by an opaque random id."""

    def __init__(self, *, ttl_s: int, time_provider: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s
        self._time = time_provider or time.time
        self._sessions: dict[str, SessionState] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> SessionState:
        now = self._time()
        state = SessionState(id=generate_session_id(), created_at=now, expires_at=now + self._ttl_s, modified=True)
        self._sessions[state.id] = state
        return state

    def get(self, session_id: str | None) -> SessionState | None:
        if not session_id:
            return None
        state = self._sessions.get(session_id)
        if state is None:
            return None
        if self._time() >= state.expires_at:
            self._sessions.pop(session_id, None)
            return None
        return state

    def regenerate(self, state: SessionState | None) -> SessionState:
        # New id and empty data; the previous id (and its forgery token) stops working.
        if state is not None:
            self._sessions.pop(state.id, None)
        return self.create()

    def destroy(self, state: SessionState | None) -> None:
        if state is not None:
            self._sessions.pop(state.id, None)

    def touch(self, state: SessionState) -> None:
        state.expires_at = self._time() + self._ttl_s

    def purge_expired(self) -> int:
        now = self._time()
        expired = [key for key, state in self._sessions.items() if now >= state.expires_at]
        for key in expired:
            del self._sessions[key]
        return len(expired)
