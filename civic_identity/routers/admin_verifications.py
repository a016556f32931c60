import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Query

from civic_identity.core.auth import get_current_admin
from civic_identity.core.exceptions import StepValidationError, VerificationNotFound
from civic_identity.core.storage import get_storage
from civic_identity.models.identity_verification import VERIFICATION_STATUSES
from civic_identity.routers.identity import get_store
from civic_identity.schemas.verification import (
    PaginatedVerificationsResponse,
    PurgeResponse,
    RejectRequest,
    ReviewResponse,
    VerificationDetailResponse,
    VerificationResponse,
)
from civic_identity.services import review
from civic_identity.services.verification_store import VerificationRecordStore

router = APIRouter(prefix="/api/admin/identity-verifications", tags=["admin-verifications"])

logger = logging.getLogger(__name__)


@router.get("", response_model=PaginatedVerificationsResponse)
def list_verifications(
    status: str = Query("reviewing", description="Filter by verification status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    admin: str = Depends(get_current_admin),
    store: VerificationRecordStore = Depends(get_store),
):
    """List verifications awaiting review, newest first"""
    if status not in VERIFICATION_STATUSES:
        raise StepValidationError(f"Invalid status filter: {status}")

    records, total = store.list_pending(status=status, page=page, page_size=page_size)
    return PaginatedVerificationsResponse(
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
        items=[VerificationResponse.model_validate(r) for r in records],
        message=f"Found {total} verification(s)",
    )


@router.get("/{verification_id}", response_model=VerificationDetailResponse)
def get_verification(
    verification_id: int,
    admin: str = Depends(get_current_admin),
    store: VerificationRecordStore = Depends(get_store),
):
    record = store.get(verification_id)
    if record is None:
        raise VerificationNotFound()
    return VerificationDetailResponse.model_validate(record)


@router.post("/{verification_id}/approve", response_model=ReviewResponse)
def approve_verification(
    verification_id: int,
    admin: str = Depends(get_current_admin),
    store: VerificationRecordStore = Depends(get_store),
):
    review.approve(store, verification_id, reviewer_id=admin)
    return ReviewResponse(message="Verification approved")


@router.post("/{verification_id}/reject", response_model=ReviewResponse)
def reject_verification(
    verification_id: int,
    body: Optional[RejectRequest] = None,
    admin: str = Depends(get_current_admin),
    store: VerificationRecordStore = Depends(get_store),
):
    review.reject(store, verification_id, reviewer_id=admin, reason=body.reason if body else None)
    return ReviewResponse(message="Verification rejected")


@router.post("/purge-expired", response_model=PurgeResponse)
def purge_expired(
    admin: str = Depends(get_current_admin),
    store: VerificationRecordStore = Depends(get_store),
):
    purged = store.purge_expired(storage=get_storage())
    logger.info("Purge requested by %s removed %s verification(s)", admin, purged)
    return PurgeResponse(purged=purged, message=f"Purged {purged} expired verification(s)")
