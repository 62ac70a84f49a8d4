# tests/conftest.py

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from taskassist.config import Settings
from taskassist.crud import DatabaseStorage
from taskassist.main import create_app
from taskassist.storage import MemStorage

# bcrypt's minimum cost keeps the suite fast
TEST_ROUNDS = 4


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_backend="memory",
        database_url=f"sqlite:///{tmp_path / 'taskassist.sqlite3'}",
        secret_key="test-secret",
        bcrypt_rounds=TEST_ROUNDS,
        api_prefix="/api",
    )


@pytest.fixture(params=["memory", "sql"])
def storage(request, settings: Settings):
    """Every storage test runs against both backends; they must agree."""
    if request.param == "sql":
        store = DatabaseStorage(settings.database_url, bcrypt_rounds=TEST_ROUNDS)
    else:
        store = MemStorage(bcrypt_rounds=TEST_ROUNDS)
    yield store
    store.close()


@pytest.fixture()
def mem_storage() -> MemStorage:
    return MemStorage(bcrypt_rounds=TEST_ROUNDS)


@pytest.fixture()
def client(settings: Settings, storage) -> TestClient:
    return TestClient(create_app(settings, storage))
