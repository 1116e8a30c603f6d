import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from pymongo import ASCENDING, DESCENDING

from zemi.database import (
    create_document,
    get_document,
    get_documents,
    serialize,
    to_object_id,
    update_documents,
    utcnow,
)
from zemi.profiles import load_profiles
from zemi.realtime import INSERT, Subscription, Topic, feed
from zemi.schemas import Message, MessageCreate
from zemi.security import get_current_user, user_from_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


async def load_conversation(booking_id: str, user_id: str):
    """Return (booking, trip, other_user_id) when user_id is a party to the booking.

    Raises 404 for unknown bookings and 403 for anyone but the passenger and
    the trip's driver.
    """
    booking = await get_document("booking", booking_id)
    if not booking:
        raise HTTPException(404, "Réservation introuvable")
    trip = await get_document("trip", booking["trip_id"])
    driver_id = trip["driver_id"] if trip else None
    if user_id == booking["passenger_id"]:
        return booking, trip, driver_id
    if user_id == driver_id:
        return booking, trip, booking["passenger_id"]
    raise HTTPException(403, "Vous ne participez pas à cette conversation")


def trip_summary(trip: Optional[dict]) -> Optional[dict]:
    if not trip:
        return None
    return {
        "id": str(trip["_id"]),
        "departure": trip["departure"],
        "destination": trip["destination"],
        "departure_time": trip["departure_time"],
        "driver_id": trip["driver_id"],
    }


def group_by_day(messages: List[dict]) -> List[dict]:
    """Chronological messages split into day sections, one separator per date change."""
    sections: List[dict] = []
    for m in messages:
        day = m["created_at"].date().isoformat()
        if not sections or sections[-1]["date"] != day:
            sections.append({"date": day, "messages": []})
        sections[-1]["messages"].append(m)
    return sections


def unread_from_others(messages: List[dict], viewer_id: str) -> List[dict]:
    return [m for m in messages if m.get("read_at") is None and m["sender_id"] != viewer_id]


def conversation_sort_key(conv: dict):
    last = conv.get("last_message")
    if last:
        return last["created_at"]
    trip = conv.get("trip") or {}
    return trip.get("departure_time") or utcnow()


@router.get("/messages/conversations")
async def list_conversations(current_user: dict = Depends(get_current_user)):
    user_id = current_user["id"]
    as_passenger = await get_documents(
        "booking", {"passenger_id": user_id, "status": {"$ne": "cancelled"}}
    )
    my_trips = await get_documents("trip", {"driver_id": user_id})
    as_driver = []
    if my_trips:
        as_driver = await get_documents(
            "booking",
            {"trip_id": {"$in": [str(t["_id"]) for t in my_trips]}, "status": {"$ne": "cancelled"}},
        )

    bookings = as_passenger + as_driver
    trip_ids = {to_object_id(b["trip_id"]) for b in bookings} - {None}
    trips = {str(t["_id"]): t for t in await get_documents("trip", {"_id": {"$in": list(trip_ids)}})}

    last_messages = {}
    if bookings:
        msgs = await get_documents(
            "message",
            {"booking_id": {"$in": [str(b["_id"]) for b in bookings]}},
            sort=[("created_at", DESCENDING)],
        )
        for m in msgs:
            last_messages.setdefault(m["booking_id"], m)

    conversations = []
    for b, is_driver in [(b, False) for b in as_passenger] + [(b, True) for b in as_driver]:
        trip = trips.get(b["trip_id"])
        other_id = b["passenger_id"] if is_driver else (trip["driver_id"] if trip else None)
        last = last_messages.get(str(b["_id"]))
        conversations.append({
            "booking_id": str(b["_id"]),
            "status": b["status"],
            "is_driver": is_driver,
            "other_user_id": other_id,
            "trip": trip_summary(trip),
            "last_message": serialize(last),
            "unread": bool(last) and last.get("read_at") is None and last["sender_id"] != user_id,
        })

    profiles = await load_profiles(c["other_user_id"] for c in conversations)
    for c in conversations:
        c["other_user"] = profiles.get(c["other_user_id"])
    conversations.sort(key=conversation_sort_key, reverse=True)
    return conversations


@router.get("/messages/{booking_id}")
async def open_thread(booking_id: str, current_user: dict = Depends(get_current_user)):
    booking, trip, other_id = await load_conversation(booking_id, current_user["id"])
    messages = await get_documents(
        "message", {"booking_id": str(booking["_id"])}, sort=[("created_at", ASCENDING)]
    )
    unread = unread_from_others(messages, current_user["id"])
    if unread:
        read_at = utcnow()
        await update_documents("message", [m["_id"] for m in unread], {"read_at": read_at})
        for m in unread:
            m["read_at"] = read_at
    profiles = await load_profiles([other_id])
    return {
        "booking": serialize(booking),
        "trip": trip_summary(trip),
        "other_user": profiles.get(other_id),
        "marked_read": len(unread),
        "sections": group_by_day([serialize(m) for m in messages]),
    }


@router.post("/messages/{booking_id}", status_code=201)
async def send_message(booking_id: str, payload: MessageCreate, current_user: dict = Depends(get_current_user)):
    booking, _, _ = await load_conversation(booking_id, current_user["id"])
    content = payload.content.strip()
    if not content:
        raise HTTPException(400, "Le message est vide")
    msg = Message(booking_id=str(booking["_id"]), sender_id=current_user["id"], content=content)
    doc = await create_document("message", msg)
    return serialize(doc)


async def _forward(websocket: WebSocket, sub: Subscription):
    while True:
        change = await sub.get()
        await websocket.send_json({"type": "message", "message": jsonable_encoder(change.new)})


@router.websocket("/ws/messages/{booking_id}")
async def thread_socket(websocket: WebSocket, booking_id: str, token: Optional[str] = None):
    user = await user_from_token(token)
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        booking, _, _ = await load_conversation(booking_id, user["id"])
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    sub = feed.subscribe(Topic("message", (INSERT,), {"booking_id": str(booking["_id"])}))
    pump = None
    try:
        await websocket.accept()
        pump = asyncio.create_task(_forward(websocket, sub))
        while True:
            # nothing is expected from the client, this only notices the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if pump is not None:
            pump.cancel()
        sub.close()
