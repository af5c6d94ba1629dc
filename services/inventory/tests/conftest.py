import os
import tempfile

# must be set before repo creates its engine
os.environ["DATABASE_URL"] = os.getenv(
    "INVENTORY_TEST_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="inventory-"), "inventory.db"),
)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import repo  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    repo.Base.metadata.drop_all(repo.engine)
    repo.Base.metadata.create_all(repo.engine)
    yield


@pytest.fixture
def api():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def catalog():
    r = repo.InventoryRepo()
    r.upsert_product("P1", "Ceramic mug", 100, 5, "img/p1.png")
    r.upsert_product("P2", "Poster", 250, 1)
    return r
