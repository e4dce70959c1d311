import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app
from schemas import Shelf


@pytest.fixture
def db():
    database = mongomock.MongoClient()["produce_logistics_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def make_shelf(db):
    def _make(code="A-01", occupied_slots=0, zone="A", shelf_type="picker"):
        shelf = Shelf(
            logistic_center_id="lc-1",
            shelf_id=code,
            type=shelf_type,
            zone=zone,
            aisle="1",
            max_slots=8,
            max_weight_kg=400,
            occupied_slots=occupied_slots,
        )
        return str(db["shelf"].insert_one(shelf.model_dump()).inserted_id)
    return _make


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
