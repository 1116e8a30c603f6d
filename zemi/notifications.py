"""
Per-user notification relay.

A relay watches the change feed for booking and message activity, keeps the
events that concern its user, and turns them into Notification entries held in
memory for as long as the user's socket is open. Nothing here is persisted or
acknowledged: a notification missed while disconnected is simply gone.
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from pymongo import DESCENDING

from zemi.database import get_db, get_document, get_documents, utcnow
from zemi.realtime import INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription, Topic, feed
from zemi.schemas import Notification, NotificationSnapshot
from zemi.security import user_from_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])

PREVIEW_LENGTH = 50
INITIAL_LIMIT = 10

STATUS_TITLES = {
    "confirmed": "Réservation confirmée",
    "cancelled": "Réservation refusée",
}


def preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    return content[:length] + ("..." if len(content) > length else "")


def route(trip: Optional[dict]) -> str:
    trip = trip or {}
    return f"{trip.get('departure')} → {trip.get('destination')}"


class NotificationRelay:
    def __init__(self, user_id: str, change_feed: ChangeFeed = feed):
        self.user_id = user_id
        self.feed = change_feed
        self.notifications: List[Notification] = []
        self.subscription: Optional[Subscription] = None

    def open(self):
        self.subscription = self.feed.subscribe(
            Topic("booking", (INSERT, UPDATE)),
            Topic("message", (INSERT,)),
        )

    def close(self):
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.read)

    def snapshot(self) -> NotificationSnapshot:
        return NotificationSnapshot(notifications=list(self.notifications), unread_count=self.unread_count)

    def mark_read(self, notification_id: str) -> bool:
        for n in self.notifications:
            if n.id == notification_id:
                n.read = True
                return True
        return False

    def mark_all_read(self):
        for n in self.notifications:
            n.read = True

    def _push(self, notification: Notification, front: bool = True) -> Optional[Notification]:
        if any(n.id == notification.id for n in self.notifications):
            return None
        if front:
            self.notifications.insert(0, notification)
        else:
            self.notifications.append(notification)
        return notification

    async def load_initial(self) -> List[Notification]:
        """Seed with the most recent unread messages addressed to this user."""
        booking_ids = await self._booking_ids()
        if not booking_ids:
            return []
        messages = await get_documents(
            "message",
            {"booking_id": {"$in": booking_ids}, "sender_id": {"$ne": self.user_id}, "read_at": None},
            limit=INITIAL_LIMIT,
            sort=[("created_at", DESCENDING)],
        )
        added = []
        for m in messages:
            n = self._push(Notification(
                id=f"message-{m['_id']}",
                type="message",
                title="Nouveau message",
                description=preview(m["content"]),
                created_at=m["created_at"],
                link=f"/messages?booking={m['booking_id']}",
            ), front=False)
            if n:
                added.append(n)
        return added

    async def _booking_ids(self) -> List[str]:
        """Ids of the bookings this user takes part in, as passenger or driver."""
        as_passenger = await get_documents("booking", {"passenger_id": self.user_id})
        my_trips = await get_documents("trip", {"driver_id": self.user_id})
        as_driver = []
        if my_trips:
            as_driver = await get_documents(
                "booking", {"trip_id": {"$in": [str(t["_id"]) for t in my_trips]}}
            )
        return [str(b["_id"]) for b in as_passenger + as_driver]

    async def _is_party(self, booking_id: str) -> bool:
        booking = await get_document("booking", booking_id)
        if not booking:
            return False
        if booking["passenger_id"] == self.user_id:
            return True
        trip = await get_document("trip", booking["trip_id"])
        return bool(trip) and trip["driver_id"] == self.user_id

    async def handle(self, change: ChangeEvent) -> Optional[Notification]:
        """Turn one change event into a notification for this user, if it concerns them."""
        if change.table == "booking" and change.event == INSERT:
            notification = await self._booking_requested(change.new)
        elif change.table == "booking" and change.event == UPDATE:
            notification = await self._booking_updated(change.new, change.old or {})
        elif change.table == "message" and change.event == INSERT:
            notification = await self._message_received(change.new)
        else:
            notification = None
        if notification is None:
            return None
        return self._push(notification)

    async def _booking_requested(self, booking: dict) -> Optional[Notification]:
        trip = await get_document("trip", booking["trip_id"])
        if not trip or trip["driver_id"] != self.user_id:
            return None
        return Notification(
            id=f"booking-{booking['id']}",
            type="booking",
            title="Nouvelle réservation",
            description=route(trip),
            created_at=utcnow(),
            link="/driver",
        )

    async def _booking_updated(self, new: dict, old: dict) -> Optional[Notification]:
        if new["passenger_id"] != self.user_id or old.get("status") == new["status"]:
            return None
        title = STATUS_TITLES.get(new["status"])
        if not title:
            return None
        trip = await get_document("trip", new["trip_id"])
        return Notification(
            id=f"booking-update-{new['id']}-{new['status']}",
            type="booking",
            title=title,
            description=route(trip),
            created_at=utcnow(),
            link="/bookings",
        )

    async def _message_received(self, message: dict) -> Optional[Notification]:
        if message["sender_id"] == self.user_id:
            return None
        if not await self._is_party(message["booking_id"]):
            return None
        db = await get_db()
        sender = await db["profile"].find_one({"user_id": message["sender_id"]})
        name = (sender or {}).get("full_name") or "Utilisateur"
        return Notification(
            id=f"message-{message['id']}",
            type="message",
            title=f"Message de {name}",
            description=preview(message["content"]),
            created_at=message.get("created_at") or utcnow(),
            link=f"/messages?booking={message['booking_id']}",
        )

    async def next(self) -> Notification:
        """Wait for the next change that yields a notification."""
        while True:
            change = await self.subscription.get()
            notification = await self.handle(change)
            if notification is not None:
                return notification


async def _pump(websocket: WebSocket, relay: NotificationRelay):
    while True:
        notification = await relay.next()
        await websocket.send_json({
            "type": "notification",
            "notification": jsonable_encoder(notification),
            "unread_count": relay.unread_count,
        })


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = None):
    user = await user_from_token(token)
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    relay = NotificationRelay(user["id"])
    relay.open()
    pump = None
    try:
        await websocket.accept()
        await relay.load_initial()
        await websocket.send_json({"type": "snapshot", **jsonable_encoder(relay.snapshot())})
        pump = asyncio.create_task(_pump(websocket, relay))
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning(f"Ignoring malformed notification frame from {user['id']}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Ignoring non-object notification frame from {user['id']}")
                continue
            action = data.get("action")
            if action == "mark_read":
                relay.mark_read(str(data.get("id")))
            elif action == "mark_all_read":
                relay.mark_all_read()
            else:
                logger.warning(f"Unknown notification action {action!r} from {user['id']}")
                continue
            await websocket.send_json({"type": "unread_count", "unread_count": relay.unread_count})
    except WebSocketDisconnect:
        pass
    finally:
        if pump is not None:
            pump.cancel()
        relay.close()
