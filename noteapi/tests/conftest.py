"""Shared pytest fixtures."""

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load environment variables before importing app modules
load_dotenv()

# Set test defaults if not provided
os.environ.setdefault("NOTEAPI_KEY", "test-key")
os.environ.setdefault("VAULT_ROOT", "/tmp/noteapi-test-vault")
os.environ.setdefault("WATCHER_ENABLED", "false")

from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from noteapi.config import Settings  # noqa: E402
from noteapi.main import create_app  # noqa: E402
from noteapi.notes.paths import VaultSandbox  # noqa: E402
from noteapi.notes.store import NoteStore  # noqa: E402
from noteapi.tests.fakes import FakeIndexClient  # noqa: E402
from noteapi.watcher.models import IndexedHashCache  # noqa: E402

API_KEY = "test-key"


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """Create an empty temporary vault directory."""
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def sandbox(vault: Path) -> VaultSandbox:
    return VaultSandbox(vault)


@pytest.fixture
def fake_index() -> FakeIndexClient:
    """Create an available in-memory index."""
    return FakeIndexClient()


@pytest.fixture
def hashes() -> IndexedHashCache:
    return IndexedHashCache()


@pytest.fixture
def store(
    sandbox: VaultSandbox, fake_index: FakeIndexClient, hashes: IndexedHashCache
) -> NoteStore:
    """Create a NoteStore wired to the fake index."""
    return NoteStore(sandbox, index=fake_index, hashes=hashes)


@pytest.fixture
def settings(vault: Path) -> Settings:
    """Create settings pointing at the temporary vault."""
    return Settings(
        _env_file=None,
        vault_root=vault,
        noteapi_key=API_KEY,
        watcher_enabled=False,
    )


@pytest.fixture
def app(settings: Settings, fake_index: FakeIndexClient) -> FastAPI:
    return create_app(settings, index=fake_index)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create a FastAPI test client that sends the API key."""
    return TestClient(app, headers={"Authorization": f"Bearer {API_KEY}"})
