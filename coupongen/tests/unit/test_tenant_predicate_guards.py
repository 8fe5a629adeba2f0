from __future__ import annotations

import pytest

from coupongen.domain.models import Campaign, Coupon
from coupongen.persistence.guards import TenantPredicateError, require_tenant_id, tenant_predicate


@pytest.mark.parametrize("tenant_id", [None, 0, -1, True, "1"])
def test_invalid_tenant_ids_are_rejected(tenant_id) -> None:
    with pytest.raises(TenantPredicateError):
        require_tenant_id(tenant_id)


def test_tenant_predicate_filters_on_tenant_column() -> None:
    clause = tenant_predicate(Campaign, 7)
    compiled = clause.compile(compile_kwargs={"literal_binds": True})
    assert str(compiled) == "campaigns.tenant_id = 7"


def test_tenant_predicate_refuses_missing_tenant() -> None:
    with pytest.raises(TenantPredicateError) as excinfo:
        tenant_predicate(Coupon, None)
    assert "tenant_id" in excinfo.value.message
