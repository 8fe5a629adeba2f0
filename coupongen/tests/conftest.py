from __future__ import annotations

import os
import tempfile

# The engine is created at import time, so the test database must be chosen first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="coupongen-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/coupongen.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from coupongen.core.config import get_settings  # noqa: E402
from coupongen.domain.models import AuditEvent, AuthUser, Campaign, Coupon, Tenant  # noqa: E402
from coupongen.persistence.db import SessionLocal, create_schema, engine  # noqa: E402
from coupongen.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Each test sees settings built from its own (possibly monkeypatched) environment.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def reset_tables_between_tests() -> None:
    # Schema creation is idempotent; rows are wiped so tests never share tenants.
    await create_schema()
    reset_telemetry()
    yield
    async with SessionLocal() as session:
        for model in (Coupon, Campaign, AuditEvent, AuthUser, Tenant):
            await session.execute(delete(model))
        await session.commit()
