import logging
from typing import Optional

from civic_identity.core.config import settings
from civic_identity.core.exceptions import InvalidTransition, VerificationNotFound
from civic_identity.core.redis import Cache
from civic_identity.core.timezone import utc_now
from civic_identity.models.identity_verification import IdentityVerification
from civic_identity.services.decision import granted_status
from civic_identity.services.verification_store import VerificationRecordStore

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = ("pending", "reviewing")


def _load_reviewable(store: VerificationRecordStore, verification_id: int, action: str) -> IdentityVerification:
    record = store.get(verification_id)
    if record is None:
        raise VerificationNotFound()
    if record.status not in REVIEWABLE_STATUSES:
        raise InvalidTransition(
            f"Cannot {action} a verification that is already {record.status}"
        )
    return record


def approve(store: VerificationRecordStore, verification_id: int, reviewer_id: str) -> IdentityVerification:
    """Approve and grant all capabilities in one transaction."""
    record = _load_reviewable(store, verification_id, "approve")
    now = utc_now()

    try:
        store.stage_update(
            record.id,
            {"status": "approved", "reviewed_by": reviewer_id, "reviewed_at": now},
            expected_version=record.version,
        )
        store.stage_user_status(
            record.user_id,
            granted_status(record.id, now, trust_score=settings.ADMIN_TRUST_SCORE),
        )
        store.commit()
    except Exception:
        store.rollback()
        raise

    Cache.clear_user_verification(record.user_id)
    logger.info("Verification %s approved by %s", record.id, reviewer_id)
    return store.refresh(record.id)


def reject(store: VerificationRecordStore, verification_id: int, reviewer_id: str,
           reason: Optional[str]) -> IdentityVerification:
    """Reject; risk reasons already on the record are kept."""
    record = _load_reviewable(store, verification_id, "reject")

    updated = store.update(
        record.id,
        {
            "status": "rejected",
            "reviewed_by": reviewer_id,
            "reviewed_at": utc_now(),
            "rejection_reason": reason,
        },
        expected_version=record.version,
    )
    if updated is None:
        raise VerificationNotFound()

    logger.info("Verification %s rejected by %s", record.id, reviewer_id)
    return updated
