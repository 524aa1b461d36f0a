import hashlib
import logging
import secrets

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer()


def hash_token(token: str) -> str:
    """sha256 hex digest stored in users.api_token_hash"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_api_token(db: Session, user: User) -> str:
    """Generate a new bearer token for a user and store only its hash"""
    token = secrets.token_urlsafe(32)
    user.api_token_hash = hash_token(token)
    db.commit()
    logger.info(f"🔑 Issued API token for user {user.id}")
    return token


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to a User or reject with 401"""
    token = credentials.credentials
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = db.query(User).filter(User.api_token_hash == hash_token(token)).first()
    if not user:
        logger.warning("⚠️ Rejected request with unknown API token")
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    return user
