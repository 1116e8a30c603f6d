import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pymongo.errors import DuplicateKeyError

from zemi.bookings import is_booking_past
from zemi.database import create_document, serialize
from zemi.messages import load_conversation
from zemi.profiles import recompute_rating
from zemi.schemas import Rating, RatingCreate
from zemi.security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ratings"])

ALREADY_RATED = "Vous avez déjà noté ce trajet"


@router.post("/ratings", status_code=201)
async def submit_rating(payload: RatingCreate, current_user: dict = Depends(get_current_user)):
    booking, trip, other_id = await load_conversation(payload.booking_id, current_user["id"])
    if payload.rated_user_id != other_id:
        raise HTTPException(400, "Vous ne pouvez noter que l'autre participant du trajet")
    if booking["status"] == "cancelled" or not is_booking_past(booking, trip):
        raise HTTPException(400, "Vous pourrez noter ce trajet une fois terminé")

    rating = Rating(
        booking_id=str(booking["_id"]),
        rater_id=current_user["id"],
        rated_user_id=payload.rated_user_id,
        rating=payload.rating,
        comment=(payload.comment or "").strip() or None,
    )
    try:
        doc = await create_document("rating", rating)
    except DuplicateKeyError:
        raise HTTPException(status.HTTP_409_CONFLICT, ALREADY_RATED)
    average = await recompute_rating(payload.rated_user_id)
    logger.info(f"Rating {doc['_id']} on booking {doc['booking_id']}, new average {average}")
    return serialize(doc)
