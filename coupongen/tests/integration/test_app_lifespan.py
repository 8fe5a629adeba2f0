from __future__ import annotations

import pytest

from coupongen.apps.api import main


async def _run_lifespan(monkeypatch) -> list[str]:
    calls: list[str] = []

    async def _record_create_schema() -> None:
        calls.append("create_schema")

    monkeypatch.setattr(main, "create_schema", _record_create_schema)
    app = main.create_app()
    async with main.lifespan(app):
        assert app.state.limiter.running
    assert not app.state.limiter.running
    return calls


@pytest.mark.asyncio
async def test_startup_creates_schema_when_enabled(monkeypatch) -> None:
    monkeypatch.setenv("DB_CREATE_SCHEMA", "true")
    assert await _run_lifespan(monkeypatch) == ["create_schema"]


@pytest.mark.asyncio
async def test_startup_leaves_schema_alone_by_default(monkeypatch) -> None:
    monkeypatch.delenv("DB_CREATE_SCHEMA", raising=False)
    assert await _run_lifespan(monkeypatch) == []
