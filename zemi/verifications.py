import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pymongo import DESCENDING

from zemi.database import (
    create_document,
    get_document,
    get_documents,
    serialize,
    update_document,
    utcnow,
)
from zemi.profiles import load_profiles
from zemi.schemas import DocumentType, IdentityVerification, RejectPayload
from zemi.security import get_current_user, require_admin
from zemi.storage import IDENTITY_BUCKET, read_image, put_object, timestamped_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["verifications"])


async def latest_verification(user_id: str):
    docs = await get_documents(
        "identity_verification", {"user_id": user_id}, limit=1, sort=[("created_at", DESCENDING)]
    )
    return docs[0] if docs else None


@router.get("/verifications/me")
async def my_verification(current_user: dict = Depends(get_current_user)):
    return serialize(await latest_verification(current_user["id"]))


@router.post("/verifications", status_code=201)
async def submit_verification(
    document_type: DocumentType = Form(...),
    document: UploadFile = File(...),
    selfie: Optional[UploadFile] = File(None),
    current_user: dict = Depends(get_current_user),
):
    user_id = current_user["id"]
    latest = await latest_verification(user_id)
    if latest and latest["status"] != "rejected":
        raise HTTPException(status.HTTP_409_CONFLICT, "Une vérification est déjà en cours ou validée")

    # validate both images before anything is written
    document_data = await read_image(document)
    selfie_data = await read_image(selfie) if selfie is not None else None

    document_url = put_object(IDENTITY_BUCKET, timestamped_path(user_id, document.filename), document_data)
    selfie_url = None
    if selfie_data is not None:
        selfie_url = put_object(
            IDENTITY_BUCKET, timestamped_path(user_id, selfie.filename, suffix="-selfie"), selfie_data
        )

    verification = IdentityVerification(
        user_id=user_id,
        document_type=document_type,
        document_url=document_url,
        selfie_url=selfie_url,
    )
    doc = await create_document("identity_verification", verification)
    logger.info(f"Identity verification {doc['_id']} submitted by {user_id}")
    return serialize(doc)


@router.get("/verifications")
async def list_verifications(admin: dict = Depends(require_admin)):
    docs = await get_documents("identity_verification", sort=[("created_at", DESCENDING)])
    owners = await load_profiles(d["user_id"] for d in docs)
    items = []
    for d in docs:
        owner = owners.get(d["user_id"]) or {}
        item = serialize(d)
        item["profile"] = {"full_name": owner.get("full_name"), "phone": owner.get("phone")}
        items.append(item)
    return {
        "verifications": items,
        "pending_count": sum(1 for d in docs if d["status"] == "pending"),
    }


async def _pending_verification(verification_id: str):
    doc = await get_document("identity_verification", verification_id)
    if not doc:
        raise HTTPException(404, "Vérification introuvable")
    if doc["status"] != "pending":
        raise HTTPException(status.HTTP_409_CONFLICT, "Cette vérification a déjà été traitée")
    return doc


@router.post("/verifications/{verification_id}/approve")
async def approve_verification(verification_id: str, admin: dict = Depends(require_admin)):
    doc = await _pending_verification(verification_id)
    new_doc = await update_document(
        "identity_verification", {"_id": doc["_id"]}, {"status": "approved", "verified_at": utcnow()}
    )
    await update_document("profile", {"user_id": doc["user_id"]}, {"verified": True})
    logger.info(f"Verification {verification_id} approved by {admin['user_id']}")
    return serialize(new_doc)


@router.post("/verifications/{verification_id}/reject")
async def reject_verification(
    verification_id: str, payload: RejectPayload, admin: dict = Depends(require_admin)
):
    reason = payload.reason.strip()
    if not reason:
        raise HTTPException(400, "Veuillez indiquer la raison du rejet")
    doc = await _pending_verification(verification_id)
    new_doc = await update_document(
        "identity_verification", {"_id": doc["_id"]}, {"status": "rejected", "rejection_reason": reason}
    )
    logger.info(f"Verification {verification_id} rejected by {admin['user_id']}")
    return serialize(new_doc)
