"""Shared fixtures."""

import pytest

from modelkit.settings import Settings
from modelkit.stores.sqlite import StoreManager


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(documents_dir=tmp_path, backend_base_url="https://api.example.test")


@pytest.fixture
async def store(settings: Settings):
    manager = StoreManager(settings)
    await manager.initialize("sample_models")
    yield manager
    await manager.close()
