import logging
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, status
from pymongo import ReturnDocument

from zemi import config
from zemi.database import (
    create_document,
    get_db,
    get_document,
    get_documents,
    serialize,
    to_object_id,
    update_document,
    utcnow,
)
from zemi.profiles import load_profiles
from zemi.realtime import UPDATE, ChangeEvent, feed
from zemi.schemas import Booking, BookingCreate
from zemi.security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


def compute_total_price(seats: int, price_per_seat: float) -> float:
    return round(seats * price_per_seat, 2)


def is_booking_past(booking: dict, trip: Optional[dict], now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if booking.get("status") == "completed":
        return True
    return bool(trip) and trip["departure_time"] <= now


def display_status(booking: dict, past: bool) -> str:
    # completed is derived from the clock and never written back
    if past and booking["status"] != "cancelled":
        return "completed"
    return booking["status"]


def partition_bookings(
    bookings: List[dict], trips: dict, now: Optional[datetime] = None
) -> Tuple[List[dict], List[dict]]:
    """Split bookings into (upcoming, past); every booking lands in exactly one list."""
    now = now or utcnow()
    upcoming, past = [], []
    for b in bookings:
        if is_booking_past(b, trips.get(b["trip_id"]), now):
            past.append(b)
        else:
            upcoming.append(b)
    return upcoming, past


async def reserve_seats(trip: dict, seats: int):
    """Take ``seats`` off the trip's counter.

    Default mode writes back the value read earlier, so two concurrent bookers
    can both pass the availability check. ZEMI_ATOMIC_SEATS=1 makes the
    decrement conditional on enough seats remaining; release_seats hands them
    back if the booking insert then fails.
    """
    if not config.ATOMIC_SEATS:
        return await update_document(
            "trip", {"_id": trip["_id"]}, {"available_seats": trip["available_seats"] - seats}
        )
    db = await get_db()
    new = await db["trip"].find_one_and_update(
        {"_id": trip["_id"], "available_seats": {"$gte": seats}},
        {"$inc": {"available_seats": -seats}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if new is None:
        raise HTTPException(status.HTTP_409_CONFLICT, "Plus assez de places disponibles")
    feed.publish(ChangeEvent("trip", UPDATE, new=serialize(new), old=serialize(trip)))
    return new


async def release_seats(trip: dict, seats: int):
    """Give back seats taken by reserve_seats when the booking could not be saved."""
    db = await get_db()
    await db["trip"].update_one(
        {"_id": trip["_id"]},
        {"$inc": {"available_seats": seats}, "$set": {"updated_at": utcnow()}},
    )
    logger.warning(f"Released {seats} seat(s) on trip {trip['_id']} after a failed booking insert")


@router.post("/bookings", status_code=201)
async def create_booking(payload: BookingCreate, current_user: dict = Depends(get_current_user)):
    trip = await get_document("trip", payload.trip_id)
    if not trip:
        raise HTTPException(404, "Trajet introuvable")
    if trip.get("status") != "active" or trip["departure_time"] <= utcnow():
        raise HTTPException(400, "Ce trajet n'est plus disponible")
    if trip["driver_id"] == current_user["id"]:
        raise HTTPException(400, "Vous ne pouvez pas réserver votre propre trajet")
    if payload.seats > trip["available_seats"]:
        raise HTTPException(400, "Plus assez de places disponibles")

    booking = Booking(
        trip_id=str(trip["_id"]),
        passenger_id=current_user["id"],
        seats_booked=payload.seats,
        total_price=compute_total_price(payload.seats, trip["price_per_seat"]),
    )
    if config.ATOMIC_SEATS:
        await reserve_seats(trip, payload.seats)
        try:
            doc = await create_document("booking", booking)
        except Exception:
            await release_seats(trip, payload.seats)
            raise
    else:
        doc = await create_document("booking", booking)
        await reserve_seats(trip, payload.seats)
    logger.info(f"Booking {doc['_id']} requested on trip {trip['_id']} for {payload.seats} seat(s)")
    return serialize(doc)


@router.get("/bookings")
async def my_bookings(current_user: dict = Depends(get_current_user)):
    bookings = await get_documents("booking", {"passenger_id": current_user["id"]})
    trip_ids = [to_object_id(b["trip_id"]) for b in bookings]
    trips = {
        str(t["_id"]): t
        for t in await get_documents("trip", {"_id": {"$in": [t for t in trip_ids if t]}})
    }
    drivers = await load_profiles(t["driver_id"] for t in trips.values())
    rated = {
        r["booking_id"]
        for r in await get_documents("rating", {"rater_id": current_user["id"]})
    }
    now = utcnow()
    upcoming, past = partition_bookings(bookings, trips, now)

    def present(b: dict, is_past: bool) -> dict:
        trip = trips.get(b["trip_id"])
        d = serialize(b)
        d["trip"] = serialize(trip)
        d["driver"] = drivers.get(trip["driver_id"]) if trip else None
        d["display_status"] = display_status(b, is_past)
        d["can_rate"] = is_past and b["status"] != "cancelled" and d["id"] not in rated
        return d

    upcoming.sort(key=lambda b: trips[b["trip_id"]]["departure_time"] if b["trip_id"] in trips else now)
    return {
        "upcoming": [present(b, False) for b in upcoming],
        "past": [present(b, True) for b in past],
    }


async def transition_booking(booking_id: str, new_status: str, current_user: dict):
    booking = await get_document("booking", booking_id)
    if not booking:
        raise HTTPException(404, "Réservation introuvable")
    trip = await get_document("trip", booking["trip_id"])
    if not trip or trip["driver_id"] != current_user["id"]:
        raise HTTPException(403, "Seul le conducteur peut modifier cette réservation")
    if booking["status"] != "pending":
        raise HTTPException(status.HTTP_409_CONFLICT, "Cette réservation a déjà été traitée")
    new_doc = await update_document("booking", {"_id": booking["_id"]}, {"status": new_status})
    logger.info(f"Booking {booking_id} {new_status} by driver {current_user['id']}")
    return serialize(new_doc)


@router.post("/bookings/{booking_id}/confirm")
async def confirm_booking(booking_id: str, current_user: dict = Depends(get_current_user)):
    return await transition_booking(booking_id, "confirmed", current_user)


@router.post("/bookings/{booking_id}/cancel")
async def cancel_booking(booking_id: str, current_user: dict = Depends(get_current_user)):
    return await transition_booking(booking_id, "cancelled", current_user)
