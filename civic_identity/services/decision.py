from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from civic_identity.core.config import settings

SYSTEM_REVIEWER = "system_auto_approval"


def granted_status(verification_id: int, now: datetime, trust_score: Optional[int] = None) -> Dict[str, Any]:
    """UserVerificationStatus fields for a verified, fully-capable user."""
    fields = {
        "is_verified": True,
        "verification_level": "government",
        "verified_at": now,
        "last_verification_id": verification_id,
        "can_vote": True,
        "can_comment": True,
        "can_create_petitions": True,
        "can_access_foi": True,
    }
    if trust_score is not None:
        fields["trust_score"] = trust_score
    return fields


class Decision(NamedTuple):
    auto_approved: bool
    record_updates: Dict[str, Any]
    user_status: Optional[Dict[str, Any]]


def decide(verification_id: int, risk_score: Optional[int], now: datetime,
           max_risk: Optional[int] = None) -> Decision:
    """
    Auto-approve low-risk attempts, send the rest to manual review.

    A missing risk score never auto-approves.
    """
    limit = settings.AUTO_APPROVE_MAX_RISK if max_risk is None else max_risk

    if risk_score is not None and risk_score <= limit:
        return Decision(
            auto_approved=True,
            record_updates={
                "status": "approved",
                "reviewed_by": SYSTEM_REVIEWER,
                "reviewed_at": now,
            },
            user_status=granted_status(verification_id, now),
        )

    return Decision(
        auto_approved=False,
        record_updates={"status": "reviewing"},
        user_status=None,
    )
