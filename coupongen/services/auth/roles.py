from __future__ import annotations

from coupongen.domain.identity import ROLE_ADMIN, ROLE_STORE, ROLE_SUPERADMIN, ROLES


# Roles that may act in place of the key role, besides the role itself.
_ROLE_GRANTS: dict[str, frozenset[str]] = {
    ROLE_ADMIN: frozenset(),
    ROLE_STORE: frozenset({ROLE_ADMIN}),
    ROLE_SUPERADMIN: frozenset(),
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str | None, required: str) -> bool:
    # Superadmin passes every gate; admin also covers store.
    if not role:
        return False
    if role == ROLE_SUPERADMIN:
        return True
    if role == required:
        return True
    return role in _ROLE_GRANTS.get(required, frozenset())
