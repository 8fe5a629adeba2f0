from __future__ import annotations

import pytest
from pydantic import ValidationError

from coupongen.apps.api.deps import require_role
from coupongen.domain.identity import Principal
from coupongen.services.auth.roles import normalize_role, role_allows


def test_non_superadmin_requires_tenant_id() -> None:
    with pytest.raises(ValidationError):
        Principal(id=1, username="ana", role="admin", tenant_id=None)


def test_superadmin_flag_is_tied_to_role() -> None:
    with pytest.raises(ValidationError):
        Principal(id=1, username="superadmin", role="admin", tenant_id=1, is_superadmin=True)
    with pytest.raises(ValidationError):
        Principal(id=1, username="root", role="superadmin", is_superadmin=False)
    principal = Principal(id=1, username="root", role="superadmin", is_superadmin=True)
    assert principal.tenant_id is None


def test_unknown_role_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Principal(id=1, username="ana", role="owner", tenant_id=1)
    with pytest.raises(ValueError):
        normalize_role("owner")
    assert normalize_role(" Admin ") == "admin"


def test_role_precedence() -> None:
    assert role_allows(role="superadmin", required="admin")
    assert role_allows(role="superadmin", required="store")
    assert role_allows(role="admin", required="admin")
    assert role_allows(role="admin", required="store")
    assert role_allows(role="store", required="store")
    assert not role_allows(role="store", required="admin")
    assert not role_allows(role="admin", required="superadmin")
    assert not role_allows(role=None, required="store")


def test_require_role_factory_rejects_unknown_roles() -> None:
    with pytest.raises(ValueError):
        require_role("owner")
