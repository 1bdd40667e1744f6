"""Shared test fixtures."""

from __future__ import annotations

import pytest

from manufacturing_orchestrator.config import OrchestratorSettings

from .fakes import FakeFishbowl


@pytest.fixture()
def settings(tmp_path, monkeypatch) -> OrchestratorSettings:
    """Settings pointing at a throwaway SQLite queue file."""
    monkeypatch.delenv("SKIP_INIT_MODELS", raising=False)
    return OrchestratorSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        fishbowl_server_url="http://fishbowl.test/",
        fishbowl_username="service",
        fishbowl_password="secret",
    )


@pytest.fixture()
def fishbowl() -> FakeFishbowl:
    return FakeFishbowl()
