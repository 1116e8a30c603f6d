from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from zemi import config, database
from zemi.database import create_document, utcnow
from zemi.main import app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    mock_db = AsyncMongoMockClient()["zemi_test"]
    database.use_database(mock_db)
    yield mock_db
    database.use_database(None)


@pytest.fixture
def storage_dir(tmp_path, monkeypatch):
    path = tmp_path / "storage"
    monkeypatch.setattr(config, "STORAGE_DIR", str(path))
    return path


@pytest.fixture
def client(db, storage_dir):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(client):
    def _make(email, full_name="Kofi Mensah", phone="+22996123456", password="secret123"):
        r = client.post(
            "/auth/register",
            data={"full_name": full_name, "phone": phone, "email": email, "password": password},
        )
        assert r.status_code == 200, r.text
        body = r.json()
        token = body["access_token"]
        return {
            "id": body["user"]["id"],
            "token": token,
            "headers": {"Authorization": f"Bearer {token}"},
        }

    return _make


@pytest.fixture
def driver(make_user):
    return make_user("kofi@example.com", full_name="Kofi Mensah")


@pytest.fixture
def passenger(make_user):
    return make_user("ama@example.com", full_name="Ama Diop")


@pytest.fixture
def make_trip(client):
    def _make(owner, **overrides):
        payload = {
            "departure": "Cotonou",
            "destination": "Lomé",
            "departure_time": (utcnow() + timedelta(days=1)).isoformat(),
            "available_seats": 3,
            "price_per_seat": 5000,
            "vehicle_model": "Toyota Corolla 2020",
            "vehicle_color": "Blanc",
            "vehicle_plate": "BJ-123-AB",
        }
        payload.update(overrides)
        r = client.post("/trips", json=payload, headers=owner["headers"])
        assert r.status_code == 201, r.text
        return r.json()

    return _make


@pytest.fixture
def past_booking(client):
    """A confirmed booking on a trip that already left, inserted behind the API's back."""

    def _make(driver, passenger, status="confirmed", hours_ago=5):
        trip = client.portal.call(create_document, "trip", {
            "driver_id": driver["id"],
            "departure": "Lomé",
            "destination": "Accra",
            "departure_time": utcnow() - timedelta(hours=hours_ago),
            "available_seats": 2,
            "price_per_seat": 8000,
            "vehicle_model": "Peugeot 406",
            "status": "active",
        })
        booking = client.portal.call(create_document, "booking", {
            "trip_id": str(trip["_id"]),
            "passenger_id": passenger["id"],
            "seats_booked": 1,
            "total_price": 8000,
            "status": status,
            "payment_status": "pending",
        })
        return str(trip["_id"]), str(booking["_id"])

    return _make
