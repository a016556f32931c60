import hmac
import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from civic_identity.core.auth import ACCESS_TOKEN_EXPIRE_HOURS, create_access_token, verify_password
from civic_identity.core.config import settings

router = APIRouter(prefix="/api/admin", tags=["admin-auth"])

logger = logging.getLogger(__name__)


class ReviewerLogin(BaseModel):
    username: str
    password: str


class ReviewerToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = ACCESS_TOKEN_EXPIRE_HOURS * 3600


@router.post("/login", response_model=ReviewerToken)
def reviewer_login(body: ReviewerLogin):
    """Exchange the reviewer password for an admin JWT used by the review queue"""
    username_ok = hmac.compare_digest(body.username.encode(), settings.ADMIN_USERNAME.encode())
    password_ok = verify_password(body.password, settings.ADMIN_PASSWORD_HASH)
    if not (username_ok and password_ok):
        logger.warning("Failed reviewer login for %r", body.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid reviewer credentials",
        )

    return ReviewerToken(access_token=create_access_token(body.username, role="admin"))
