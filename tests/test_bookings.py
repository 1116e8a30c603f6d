from datetime import timedelta

import pytest

from zemi import config
from zemi.bookings import compute_total_price, display_status, partition_bookings
from zemi.database import utcnow


def test_booking_computes_total_and_takes_seats(client, driver, passenger, make_trip):
    trip = make_trip(driver, available_seats=3, price_per_seat=5000)
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": 2}, headers=passenger["headers"])
    assert r.status_code == 201, r.text
    booking = r.json()
    assert booking["status"] == "pending"
    assert booking["payment_status"] == "pending"
    assert booking["seats_booked"] == 2
    assert booking["total_price"] == 10000

    assert client.get(f"/trips/{trip['id']}").json()["available_seats"] == 1


def test_booking_cannot_exceed_available_seats(client, driver, passenger, make_trip):
    trip = make_trip(driver, available_seats=2)
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": 3}, headers=passenger["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Plus assez de places disponibles"
    assert client.get(f"/trips/{trip['id']}").json()["available_seats"] == 2


def test_booking_edge_cases(client, driver, passenger, make_trip):
    trip = make_trip(driver)
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": 0}, headers=passenger["headers"])
    assert r.status_code == 422
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": 1}, headers=driver["headers"])
    assert r.status_code == 400
    r = client.post("/bookings", json={"trip_id": "nope", "seats": 1}, headers=passenger["headers"])
    assert r.status_code == 404


def test_atomic_seats_mode(client, driver, passenger, make_trip, monkeypatch):
    monkeypatch.setattr(config, "ATOMIC_SEATS", True)
    trip = make_trip(driver, available_seats=2)
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": 2}, headers=passenger["headers"])
    assert r.status_code == 201
    assert client.get(f"/trips/{trip['id']}").json()["available_seats"] == 0


def test_atomic_seats_returned_when_insert_fails(client, driver, passenger, make_trip, monkeypatch):
    monkeypatch.setattr(config, "ATOMIC_SEATS", True)
    trip = make_trip(driver, available_seats=3)

    async def broken_insert(collection_name, data):
        raise RuntimeError("insert failed")

    monkeypatch.setattr("zemi.bookings.create_document", broken_insert)
    with pytest.raises(RuntimeError):
        client.post("/bookings", json={"trip_id": trip["id"], "seats": 2}, headers=passenger["headers"])
    assert client.get(f"/trips/{trip['id']}").json()["available_seats"] == 3


def _book(client, passenger, trip, seats=1):
    r = client.post("/bookings", json={"trip_id": trip["id"], "seats": seats}, headers=passenger["headers"])
    assert r.status_code == 201, r.text
    return r.json()


def test_driver_confirms_and_cancels(client, driver, passenger, make_user, make_trip):
    trip = make_trip(driver)
    first = _book(client, passenger, trip)
    second = _book(client, passenger, trip)

    r = client.post(f"/bookings/{first['id']}/confirm", headers=driver["headers"])
    assert r.status_code == 200
    assert r.json()["status"] == "confirmed"

    r = client.post(f"/bookings/{second['id']}/cancel", headers=driver["headers"])
    assert r.json()["status"] == "cancelled"

    # no transition once the booking left pending
    r = client.post(f"/bookings/{first['id']}/cancel", headers=driver["headers"])
    assert r.status_code == 409


def test_only_driver_transitions(client, driver, passenger, make_user, make_trip):
    trip = make_trip(driver)
    booking = _book(client, passenger, trip)
    stranger = make_user("stranger@example.com")
    assert client.post(f"/bookings/{booking['id']}/confirm", headers=passenger["headers"]).status_code == 403
    assert client.post(f"/bookings/{booking['id']}/confirm", headers=stranger["headers"]).status_code == 403
    assert client.post("/bookings/unknown/confirm", headers=driver["headers"]).status_code == 404


def test_driver_dashboard(client, driver, passenger, make_trip):
    trip = make_trip(driver)
    pending = _book(client, passenger, trip)
    done = _book(client, passenger, trip)
    client.post(f"/bookings/{done['id']}/confirm", headers=driver["headers"])

    r = client.get("/driver/dashboard", headers=driver["headers"])
    assert r.status_code == 200
    body = r.json()
    assert [t["id"] for t in body["active_trips"]] == [trip["id"]]
    assert body["past_trips"] == []
    assert body["pending_count"] == 1
    assert {b["id"] for b in body["requests"]} == {pending["id"], done["id"]}
    request = next(b for b in body["requests"] if b["id"] == pending["id"])
    assert request["passenger"]["full_name"] == "Ama Diop"
    assert request["trip"]["departure"] == "Cotonou"


def test_my_bookings_partition(client, driver, passenger, make_trip, past_booking):
    trip = make_trip(driver)
    upcoming = _book(client, passenger, trip)
    _, past_id = past_booking(driver, passenger)
    _, cancelled_id = past_booking(driver, passenger, status="cancelled")

    r = client.get("/bookings", headers=passenger["headers"])
    assert r.status_code == 200
    body = r.json()
    assert [b["id"] for b in body["upcoming"]] == [upcoming["id"]]
    assert {b["id"] for b in body["past"]} == {past_id, cancelled_id}

    past = {b["id"]: b for b in body["past"]}
    assert past[past_id]["display_status"] == "completed"
    assert past[past_id]["can_rate"] is True
    assert past[cancelled_id]["display_status"] == "cancelled"
    assert past[cancelled_id]["can_rate"] is False
    assert body["upcoming"][0]["driver"]["full_name"] == "Kofi Mensah"
    assert body["upcoming"][0]["can_rate"] is False


def test_total_price():
    assert compute_total_price(3, 5000) == 15000
    assert compute_total_price(2, 1250.5) == 2501.0


@pytest.mark.parametrize("status", ["pending", "confirmed", "cancelled", "completed"])
def test_partition_is_disjoint_and_exhaustive(status):
    now = utcnow()
    trips = {
        "future": {"departure_time": now + timedelta(hours=1)},
        "gone": {"departure_time": now - timedelta(hours=1)},
        "now": {"departure_time": now},
    }
    bookings = [{"trip_id": t, "status": status} for t in trips]
    upcoming, past = partition_bookings(bookings, trips, now)
    assert len(upcoming) + len(past) == len(bookings)
    assert not [b for b in upcoming if b in past]
    if status == "completed":
        assert upcoming == []
    else:
        assert [b["trip_id"] for b in upcoming] == ["future"]
        assert [b["trip_id"] for b in past] == ["gone", "now"]


def test_display_status_is_derived():
    assert display_status({"status": "confirmed"}, past=True) == "completed"
    assert display_status({"status": "cancelled"}, past=True) == "cancelled"
    assert display_status({"status": "pending"}, past=False) == "pending"
