import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from zemi import config
from zemi.database import get_db, get_document, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


async def user_from_token(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    user = await get_document("user", user_id)
    if user:
        user["id"] = str(user["_id"])
    return user


async def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    user = await user_from_token(token)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session invalide ou expirée, veuillez vous reconnecter",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_profile(current_user: dict = Depends(get_current_user)) -> dict:
    db = await get_db()
    profile = await db["profile"].find_one({"user_id": current_user["id"]})
    if not profile:
        raise HTTPException(404, "Profil introuvable")
    return profile


async def require_admin(profile: dict = Depends(get_current_profile)) -> dict:
    if not profile.get("is_admin"):
        logger.warning(f"Refused admin access to user {profile['user_id']}")
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Accès refusé - Administrateurs uniquement")
    return profile
