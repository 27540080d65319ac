import asyncio

import pytest
from fastapi.testclient import TestClient

from src.server.dependencies import build_stores, set_stores


@pytest.fixture
def stores(tmp_path):
    stores = build_stores(str(tmp_path / "api.db"))
    asyncio.run(stores.init())
    set_stores(stores)
    yield stores
    asyncio.run(stores.close())
    set_stores(None)


@pytest.fixture
def client(stores):
    from src.server.app import app

    with TestClient(app) as test_client:
        yield test_client
