import logging
from typing import Dict, Iterable

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from zemi.database import get_db, get_documents, serialize, update_document
from zemi.schemas import ProfileUpdate
from zemi.security import get_current_profile
from zemi.storage import IDENTITY_BUCKET, file_extension, upload_image

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profiles"])

PUBLIC_FIELDS = ("user_id", "full_name", "phone", "photo_url", "rating", "total_trips", "verified")


def public_profile(doc: dict | None) -> dict | None:
    if not doc:
        return None
    return {k: doc.get(k) for k in PUBLIC_FIELDS}


async def load_profiles(user_ids: Iterable[str]) -> Dict[str, dict]:
    """Public profiles keyed by user_id, for joining onto trips, bookings and messages."""
    ids = list({u for u in user_ids if u})
    if not ids:
        return {}
    docs = await get_documents("profile", {"user_id": {"$in": ids}})
    return {d["user_id"]: public_profile(d) for d in docs}


async def recompute_rating(user_id: str):
    """Refresh a profile's running average from all ratings it received."""
    ratings = await get_documents("rating", {"rated_user_id": user_id})
    if not ratings:
        return None
    average = round(sum(r["rating"] for r in ratings) / len(ratings), 2)
    await update_document("profile", {"user_id": user_id}, {"rating": average})
    return average


@router.get("/profiles/me")
async def my_profile(profile: dict = Depends(get_current_profile)):
    return serialize(profile)


@router.put("/profiles/me")
async def update_my_profile(payload: ProfileUpdate, profile: dict = Depends(get_current_profile)):
    full_name = payload.full_name.strip()
    if not full_name:
        raise HTTPException(400, "Le nom est requis")
    updates = {
        "full_name": full_name,
        "phone": (payload.phone or "").strip() or None,
        "photo_url": payload.photo_url,
    }
    new_doc = await update_document("profile", {"_id": profile["_id"]}, updates)
    return serialize(new_doc)


@router.post("/profiles/me/photo")
async def upload_photo(photo: UploadFile = File(...), profile: dict = Depends(get_current_profile)):
    path = f"{profile['user_id']}/avatar.{file_extension(photo.filename)}"
    url = await upload_image(photo, IDENTITY_BUCKET, path)
    # the URL is only saved on the profile by a following PUT /profiles/me
    return {"photo_url": url}


@router.get("/profiles/{user_id}")
async def get_profile(user_id: str):
    db = await get_db()
    doc = await db["profile"].find_one({"user_id": user_id})
    if not doc:
        raise HTTPException(404, "Profil introuvable")
    return public_profile(doc)


@router.get("/profiles/{user_id}/reviews")
async def profile_reviews(user_id: str):
    ratings = await get_documents("rating", {"rated_user_id": user_id})
    raters = await load_profiles(r["rater_id"] for r in ratings)
    reviews = []
    for r in ratings:
        rater = raters.get(r["rater_id"]) or {}
        reviews.append({
            "id": str(r["_id"]),
            "rating": r["rating"],
            "comment": r.get("comment"),
            "created_at": r["created_at"],
            "rater_name": rater.get("full_name") or "Utilisateur",
            "rater_photo": rater.get("photo_url"),
        })
    return reviews
