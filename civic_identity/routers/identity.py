import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.orm import Session

from civic_identity.core.auth import CurrentUser, get_current_user
from civic_identity.core.config import settings
from civic_identity.core.database import get_db
from civic_identity.core.exceptions import RateLimited, StepValidationError, VerificationNotFound
from civic_identity.core.redis import Cache, RateLimiter
from civic_identity.schemas.verification import (
    Permissions,
    StartVerificationRequest,
    StartVerificationResponse,
    VerificationStatusResponse,
)
from civic_identity.services.steps import StepContext, StepProcessor, UploadedFile
from civic_identity.services.verification_store import VerificationRecordStore

router = APIRouter(prefix="/api/identity", tags=["identity"])

logger = logging.getLogger(__name__)


def get_store(db: Session = Depends(get_db)) -> VerificationRecordStore:
    return VerificationRecordStore(db)


def get_step_processor(store: VerificationRecordStore = Depends(get_store)) -> StepProcessor:
    return StepProcessor(store)


def _read_upload(upload: UploadFile) -> UploadedFile:
    # Read one byte past the limit so oversize files are detected without loading them whole
    data = upload.file.read(settings.MAX_UPLOAD_BYTES + 1)
    return UploadedFile(filename=upload.filename or "", content_type=upload.content_type, data=data)


@router.post("/start-verification", response_model=StartVerificationResponse)
def start_verification(
    request: Request,
    body: Optional[StartVerificationRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_store),
):
    is_allowed, _ = RateLimiter.check_rate_limit(
        identifier=user.id,
        action="start_verification",
        max_requests=10,
        window_seconds=3600,
    )
    if not is_allowed:
        retry_after = RateLimiter.get_remaining_time(user.id, "start_verification")
        logger.warning("start-verification rate limit hit for user %s", user.id)
        raise RateLimited(
            f"Too many verification attempts. Please try again in {retry_after} seconds.",
            retry_after=retry_after,
        )

    email = (body.email if body else None) or user.email
    if not email:
        raise StepValidationError("Email is required")

    record, created = store.start_or_resume(
        user.id,
        email,
        {
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent", ""),
            "geolocation": request.headers.get("cf-ipcountry", "Unknown"),
        },
    )

    return StartVerificationResponse(
        verificationId=record.id,
        message="Verification process started" if created else "Continuing existing verification process",
    )


@router.post("/submit-step")
def submit_step(
    request: Request,
    verificationId: Optional[str] = Form(None),
    step: Optional[str] = Form(None),
    data: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    user: CurrentUser = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_store),
    processor: StepProcessor = Depends(get_step_processor),
):
    """
    Submit one step of the verification workflow.

    - **verificationId**: id returned by /start-verification
    - **step**: captcha, email, verify-email, mfa, verify-totp, id-upload,
      liveness, duplicate-check or terms
    - **data**: JSON-encoded step payload
    - **files**: up to 4 for id-upload (front, back, extras), 1 for liveness
    """
    if not verificationId or not verificationId.strip().isdigit():
        raise StepValidationError("Verification ID required")
    if not step:
        raise StepValidationError("Invalid verification step")

    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError:
        raise StepValidationError("Step data must be valid JSON")
    if not isinstance(payload, dict):
        raise StepValidationError("Step data must be a JSON object")

    record = store.get_for_user(int(verificationId), user.id)
    if record is None:
        raise VerificationNotFound()

    uploads = [_read_upload(f) for f in (files or []) if f.filename]
    context = StepContext(ip_address=request.client.host if request.client else None)

    return processor.submit(record, step, payload, uploads, context)


@router.get("/status", response_model=VerificationStatusResponse)
def get_verification_status(
    user: CurrentUser = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_store),
):
    cached = Cache.get_user_verification(user.id)
    if cached:
        return VerificationStatusResponse(**cached)

    status = store.get_user_status(user.id)
    if status is None:
        return VerificationStatusResponse()

    response = VerificationStatusResponse(
        isVerified=status.is_verified,
        verificationLevel=status.verification_level,
        verifiedAt=status.verified_at,
        permissions=Permissions(
            canVote=status.can_vote,
            canComment=status.can_comment,
            canCreatePetitions=status.can_create_petitions,
            canAccessFOI=status.can_access_foi,
        ),
    )
    Cache.set_user_verification(user.id, response.model_dump(mode="json"))
    return response
