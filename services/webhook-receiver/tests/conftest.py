import pytest

from packages.integration.db import init_schema


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Fresh SQLite file per test; the engine proxy follows DATABASE_URL."""
    path = tmp_path / "gateway.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{path}")
    init_schema()
    return path
