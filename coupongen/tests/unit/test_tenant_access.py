from __future__ import annotations

from coupongen.domain.identity import Principal, ResolvedTenant
from coupongen.services.tenancy import (
    ACCESS_ALLOW,
    ACCESS_DENY,
    ACCESS_REDIRECT,
    ACCESS_REDIRECT_LOGIN,
    check_tenant_access,
    referer_tenant_slug,
    rewrite_tenant_path,
)


TENANT_A = ResolvedTenant(id=1, slug="acme", name="Acme")
TENANT_B = ResolvedTenant(id=2, slug="globex", name="Globex")


def _admin(tenant_id: int | None = 1, tenant_slug: str | None = "acme") -> Principal:
    return Principal(id=10, username="ana", role="admin", tenant_id=tenant_id, tenant_slug=tenant_slug)


def test_no_principal_redirects_to_login() -> None:
    decision = check_tenant_access(tenant=TENANT_A, principal=None, path="/t/acme/admin")
    assert decision.outcome == ACCESS_REDIRECT_LOGIN
    assert decision.location == "/login"


def test_same_tenant_is_allowed_by_id() -> None:
    decision = check_tenant_access(tenant=TENANT_A, principal=_admin(), path="/t/acme/admin")
    assert decision.outcome == ACCESS_ALLOW


def test_same_tenant_is_allowed_by_slug() -> None:
    principal = _admin(tenant_id=99, tenant_slug="acme")
    decision = check_tenant_access(tenant=TENANT_A, principal=principal, path="/t/acme/admin")
    assert decision.outcome == ACCESS_ALLOW


def test_superadmin_bypasses_tenant_scope() -> None:
    principal = Principal(id=1, username="root", role="superadmin", is_superadmin=True)
    for tenant in (TENANT_A, TENANT_B):
        decision = check_tenant_access(tenant=tenant, principal=principal, path=f"/t/{tenant.slug}/admin")
        assert decision.outcome == ACCESS_ALLOW


def test_other_tenant_is_redirected_to_own_slug() -> None:
    decision = check_tenant_access(
        tenant=TENANT_B,
        principal=_admin(),
        path="/t/globex/admin/campaigns",
        query="page=2",
    )
    assert decision.outcome == ACCESS_REDIRECT
    assert decision.location == "/t/acme/admin/campaigns?page=2"


def test_other_tenant_without_slug_is_denied() -> None:
    decision = check_tenant_access(tenant=TENANT_B, principal=_admin(tenant_slug=None), path="/t/globex/admin")
    assert decision.outcome == ACCESS_DENY
    assert decision.location is None


def test_isolation_over_all_principal_tenant_pairs() -> None:
    tenants = [ResolvedTenant(id=i, slug=f"t{i}", name=f"T{i}") for i in range(1, 5)]
    for owner in tenants:
        principal = Principal(id=owner.id, username="u", role="store", tenant_id=owner.id)
        for tenant in tenants:
            decision = check_tenant_access(tenant=tenant, principal=principal, path=f"/t/{tenant.slug}/store")
            assert (decision.outcome == ACCESS_ALLOW) is (owner.id == tenant.id)


def test_rewrite_replaces_only_leading_segment() -> None:
    assert rewrite_tenant_path("/t/globex/api/t/globex", "acme") == "/t/acme/api/t/globex"
    assert rewrite_tenant_path("/t/globex", "acme") == "/t/acme"
    assert rewrite_tenant_path("/t/globex/store", "acme", query="a=1&b=2") == "/t/acme/store?a=1&b=2"


def test_referer_tenant_slug() -> None:
    assert referer_tenant_slug("https://shop.example.com/t/acme/admin?x=1") == "acme"
    assert referer_tenant_slug("https://shop.example.com/t/acme") == "acme"
    assert referer_tenant_slug("https://shop.example.com/admin") is None
    assert referer_tenant_slug(None) is None


def test_rewrite_keeps_slug_text_literal() -> None:
    assert rewrite_tenant_path("/t/globex/admin", r"ac\1me") == r"/t/ac\1me/admin"
    assert rewrite_tenant_path("/t/globex/admin", "a\\b") == "/t/a\\b/admin"


def test_referer_slug_comes_from_path_only() -> None:
    assert referer_tenant_slug("https://shop.example.com/login?next=/t/globex/admin") is None
    assert referer_tenant_slug("https://shop.example.com/admin#/t/globex") is None
    assert referer_tenant_slug("https://shop.example.com/t/acme/admin?next=/t/globex") == "acme"
    assert referer_tenant_slug("/t/acme/form") == "acme"
