# services/auth_service.py
from typing import Optional
from sqlalchemy.orm import Session
from fastapi.security import OAuth2PasswordBearer
from fastapi import Depends, HTTPException, status
from jose import JWTError
from ..models import user as user_model
from ..core.enums import UserRole
from ..core.security import decode_access_token
from ..database import get_db

# tokens are issued by the external identity service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/token")

def get_profile(db: Session, profile_id: str) -> Optional[user_model.Profile]:
    return db.query(user_model.Profile).filter(user_model.Profile.id == profile_id).first()

def profile_from_token(db: Session, token: str) -> Optional[user_model.Profile]:
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    return get_profile(db, str(sub))

def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> user_model.Profile:
    user = profile_from_token(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

def require_admin(current_user: user_model.Profile = Depends(get_current_user)) -> user_model.Profile:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return current_user
