import pytest

from packages.integration.db import init_schema
from packages.integration.registry import ChannelRegistry
from packages.integration.vault import CredentialVault

KEY = b"k" * 32


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Fresh SQLite file per test; the engine proxy follows DATABASE_URL."""
    path = tmp_path / "gateway.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{path}")
    init_schema()
    return path


@pytest.fixture
def vault():
    return CredentialVault(KEY)


@pytest.fixture
def registry(database, vault):
    return ChannelRegistry(vault)
