from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging
import re
import secrets
from typing import Iterable

from coupongen.core.errors import ForgeryTokenError
from coupongen.services.auth.sessions import SessionState


logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Unauthenticated entry points; clients have no token before these succeed.
DEFAULT_EXEMPT_PATHS: tuple[str, ...] = (
    "/api/login",
    "/api/superadmin/login",
    "/api/signup",
    "/submit",
    "/submit/*",
    "/t/:tenantSlug/submit",
)

DEFAULT_PROTECTED_PREFIXES: tuple[str, ...] = (
    "/api/admin",
    "/api/store",
    "/api/superadmin",
)

_PARAM_RE = re.compile(r":[A-Za-z_][A-Za-z0-9_]*")
_TENANT_API_RE = re.compile(r"^/t/[^/]+/api(?:/|$)")

SESSION_TOKEN_KEY = "csrf_token"


def compile_path_template(template: str) -> re.Pattern[str]:
    """Translate ``/t/:tenantSlug/submit`` into an anchored matcher.

    Each ``:param`` matches exactly one non-empty path segment and the whole
    path must match. A trailing ``/*`` is the explicit carve-out for nested
    paths (``/submit/*`` matches ``/submit/x`` but not ``/submitx``).
    """
    nested = template.endswith("/*")
    if nested:
        template = template[:-2]
    parts = _PARAM_RE.split(template)
    params = _PARAM_RE.findall(template)
    pattern = ""
    for index, literal in enumerate(parts):
        pattern += re.escape(literal)
        if index < len(params):
            pattern += "[^/]+"
    if nested:
        return re.compile(f"^{pattern}/.+$")
    return re.compile(f"^{pattern}$")


def _prefix_matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class ForgeryGuard:
    exempt: tuple[re.Pattern[str], ...]
    protected_prefixes: tuple[str, ...]
    header_name: str

    @classmethod
    def build(
        cls,
        *,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        protected_prefixes: Iterable[str] = DEFAULT_PROTECTED_PREFIXES,
        header_name: str = "X-CSRF-Token",
    ) -> "ForgeryGuard":
        # Matchers are compiled once here and reused for every request.
        return cls(
            exempt=tuple(compile_path_template(path) for path in exempt_paths),
            protected_prefixes=tuple(protected_prefixes),
            header_name=header_name,
        )

    def is_exempt(self, path: str) -> bool:
        return any(matcher.match(path) for matcher in self.exempt)

    def is_protected(self, path: str) -> bool:
        if _TENANT_API_RE.match(path):
            return True
        return any(_prefix_matches(path, prefix) for prefix in self.protected_prefixes)

    def requires_token(self, method: str, path: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return False
        if self.is_exempt(path):
            return False
        return self.is_protected(path)

    def verify(self, session: SessionState | None, supplied: str | None) -> None:
        expected = session.data.get(SESSION_TOKEN_KEY) if session is not None else None
        if not expected or not supplied:
            raise ForgeryTokenError()
        if not hmac.compare_digest(str(expected).encode("utf-8"), supplied.encode("utf-8")):
            raise ForgeryTokenError()


def issue_token(session: SessionState) -> str:
    # One token per session; regenerating the session drops it.
    token = session.data.get(SESSION_TOKEN_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session.data[SESSION_TOKEN_KEY] = token
        session.modified = True
    return str(token)
