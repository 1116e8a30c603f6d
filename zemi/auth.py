import logging

from fastapi import APIRouter, Depends, Form, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import EmailStr

from zemi.database import create_document, get_db, serialize
from zemi.schemas import Profile, User
from zemi.security import create_access_token, get_current_user, pwd_context

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _session(user: dict, profile: dict):
    token = create_access_token({"sub": str(user["_id"])})
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {"id": str(user["_id"]), "email": user["email"]},
        "profile": serialize(profile),
    }


@router.post("/auth/register")
async def register(
    full_name: str = Form(..., min_length=2),
    phone: str = Form(..., min_length=8),
    email: EmailStr = Form(...),
    password: str = Form(..., min_length=6),
):
    db = await get_db()
    existing = await db["user"].find_one({"email": email.lower()})
    if existing:
        raise HTTPException(status_code=400, detail="Cet email est déjà utilisé")
    user = User(email=email.lower(), password=pwd_context.hash(password))
    user_doc = await create_document("user", user)
    profile = Profile(user_id=str(user_doc["_id"]), full_name=full_name.strip(), phone=phone.strip())
    profile_doc = await create_document("profile", profile)
    logger.info(f"Registered user {user_doc['_id']}")
    return _session(user_doc, profile_doc)


@router.post("/auth/login")
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    db = await get_db()
    user = await db["user"].find_one({"email": form_data.username.lower()})
    if not user or not pwd_context.verify(form_data.password, user.get("password", "")):
        raise HTTPException(status_code=400, detail="Email ou mot de passe incorrect")
    profile = await db["profile"].find_one({"user_id": str(user["_id"])})
    return _session(user, profile)


@router.get("/auth/me")
async def me(current_user: dict = Depends(get_current_user)):
    db = await get_db()
    profile = await db["profile"].find_one({"user_id": current_user["id"]})
    return {
        "id": current_user["id"],
        "email": current_user["email"],
        "profile": serialize(profile),
    }
