from typing import List, NamedTuple, Optional

from civic_identity.core.config import settings

DUPLICATE_ID_WEIGHT = 40
DUPLICATE_FACE_WEIGHT = 35
DUPLICATE_IP_WEIGHT = 15
LOW_FACE_MATCH_WEIGHT = 25

DUPLICATE_ID_REASON = "Duplicate ID number detected"
DUPLICATE_FACE_REASON = "Similar face detected in system"
DUPLICATE_IP_REASON = "Multiple accounts from same IP"
LOW_FACE_MATCH_REASON = "Low face match score"


class RiskAssessment(NamedTuple):
    score: int
    reasons: List[str]


def score(record, face_match_threshold: Optional[int] = None) -> RiskAssessment:
    """
    Additive risk score from the duplicate flags and face-match score
    already on the record. Reads only; never mutates the record.

    Rules apply in a fixed order, so reasons always appear as:
    duplicate ID, duplicate face, shared IP, low face match.
    """
    threshold = settings.FACE_MATCH_THRESHOLD if face_match_threshold is None else face_match_threshold
    total = 0
    reasons: List[str] = []

    if getattr(record, "duplicate_id_check", False):
        total += DUPLICATE_ID_WEIGHT
        reasons.append(DUPLICATE_ID_REASON)

    if getattr(record, "duplicate_face_check", False):
        total += DUPLICATE_FACE_WEIGHT
        reasons.append(DUPLICATE_FACE_REASON)

    if getattr(record, "duplicate_ip_check", False):
        total += DUPLICATE_IP_WEIGHT
        reasons.append(DUPLICATE_IP_REASON)

    face_match_score = getattr(record, "face_match_score", None)
    if face_match_score is not None and face_match_score < threshold:
        total += LOW_FACE_MATCH_WEIGHT
        reasons.append(LOW_FACE_MATCH_REASON)

    return RiskAssessment(score=total, reasons=reasons)
