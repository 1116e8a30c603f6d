import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import ASCENDING, DESCENDING

from zemi.database import create_document, get_document, get_documents, serialize, utcnow
from zemi.profiles import load_profiles
from zemi.schemas import Trip, TripCreate
from zemi.security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["trips"])


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_trip_past(trip: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return trip.get("status") == "completed" or trip["departure_time"] <= now


def split_driver_trips(trips: List[dict], now: Optional[datetime] = None):
    """Active trips are still open and in the future; everything else is past."""
    now = now or utcnow()
    active = [t for t in trips if t.get("status") == "active" and t["departure_time"] > now]
    past = [t for t in trips if is_trip_past(t, now)]
    return active, past


def bookable_filter() -> dict:
    return {"status": "active", "available_seats": {"$gt": 0}}


async def with_drivers(trips: List[dict]) -> List[dict]:
    drivers = await load_profiles(t["driver_id"] for t in trips)
    out = []
    for t in trips:
        d = serialize(t)
        d["driver"] = drivers.get(t["driver_id"])
        out.append(d)
    return out


@router.get("/trips")
async def list_trips(limit: int = 50):
    docs = await get_documents("trip", bookable_filter(), limit=limit, sort=[("departure_time", ASCENDING)])
    return await with_drivers(docs)


@router.get("/trips/search")
async def search_trips(
    departure: Optional[str] = Query(None, alias="from"),
    destination: Optional[str] = Query(None, alias="to"),
    on: Optional[date] = Query(None, alias="date"),
    limit: int = 50,
):
    filter_q = bookable_filter()
    if departure:
        filter_q["departure"] = {"$regex": re.escape(departure.strip()), "$options": "i"}
    if destination:
        filter_q["destination"] = {"$regex": re.escape(destination.strip()), "$options": "i"}
    if on:
        start = datetime.combine(on, time.min)
        filter_q["departure_time"] = {"$gte": start, "$lt": start + timedelta(days=1)}
    docs = await get_documents("trip", filter_q, limit=limit, sort=[("departure_time", ASCENDING)])
    return await with_drivers(docs)


@router.get("/trips/{trip_id}")
async def get_trip(trip_id: str):
    doc = await get_document("trip", trip_id)
    if not doc:
        raise HTTPException(404, "Trajet introuvable")
    return (await with_drivers([doc]))[0]


@router.post("/trips", status_code=201)
async def publish_trip(payload: TripCreate, current_user: dict = Depends(get_current_user)):
    departure_time = naive_utc(payload.departure_time)
    if departure_time <= utcnow():
        raise HTTPException(400, "La date de départ doit être dans le futur")
    departure = payload.departure.strip()
    destination = payload.destination.strip()
    if not departure or not destination:
        raise HTTPException(400, "Veuillez indiquer le départ et la destination")
    trip = Trip(
        driver_id=current_user["id"],
        departure=departure,
        destination=destination,
        departure_time=departure_time,
        available_seats=payload.available_seats,
        price_per_seat=payload.price_per_seat,
        vehicle_model=payload.vehicle_model.strip(),
        vehicle_color=payload.vehicle_color,
        vehicle_plate=payload.vehicle_plate,
        description=payload.description,
    )
    doc = await create_document("trip", trip)
    logger.info(f"Trip {doc['_id']} published by {current_user['id']}")
    return serialize(doc)


@router.get("/driver/dashboard")
async def driver_dashboard(current_user: dict = Depends(get_current_user)):
    trips = await get_documents("trip", {"driver_id": current_user["id"]}, sort=[("departure_time", ASCENDING)])
    active, past = split_driver_trips(trips)
    requests = []
    if trips:
        by_id = {str(t["_id"]): t for t in trips}
        bookings = await get_documents(
            "booking", {"trip_id": {"$in": list(by_id)}}, sort=[("created_at", DESCENDING)]
        )
        passengers = await load_profiles(b["passenger_id"] for b in bookings)
        for b in bookings:
            trip = by_id[b["trip_id"]]
            d = serialize(b)
            d["trip"] = {
                "departure": trip["departure"],
                "destination": trip["destination"],
                "departure_time": trip["departure_time"],
            }
            d["passenger"] = passengers.get(b["passenger_id"])
            requests.append(d)
    return {
        "active_trips": [serialize(t) for t in active],
        "past_trips": [serialize(t) for t in past],
        "requests": requests,
        "pending_count": sum(1 for r in requests if r["status"] == "pending"),
    }
