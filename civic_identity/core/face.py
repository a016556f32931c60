import logging
from typing import Optional, Protocol

import boto3

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)


class FaceMatcher(Protocol):
    def match_score(self, selfie: bytes, id_front: Optional[bytes]) -> int:
        """Similarity between selfie and ID photo, 0-100."""
        ...

    def find_duplicate_face(self, selfie: bytes) -> bool:
        """True when the face is already enrolled for another identity."""
        ...


class StubFaceMatcher:
    """Fixed score, no duplicate detection. Development and tests only."""

    def __init__(self, score: Optional[int] = None):
        self.score = settings.STUB_FACE_MATCH_SCORE if score is None else score

    def match_score(self, selfie: bytes, id_front: Optional[bytes]) -> int:
        return self.score

    def find_duplicate_face(self, selfie: bytes) -> bool:
        return False


class RekognitionFaceMatcher:
    def __init__(self, client=None, collection_id: Optional[str] = None):
        self.client = client or boto3.client("rekognition", region_name=settings.AWS_REGION)
        self.collection_id = collection_id or settings.REKOGNITION_COLLECTION_ID

    def match_score(self, selfie: bytes, id_front: Optional[bytes]) -> int:
        if not id_front:
            return 0
        response = self.client.compare_faces(
            SourceImage={"Bytes": selfie},
            TargetImage={"Bytes": id_front},
            SimilarityThreshold=0,
        )
        matches = response.get("FaceMatches", [])
        if not matches:
            return 0
        return int(round(max(m["Similarity"] for m in matches)))

    def find_duplicate_face(self, selfie: bytes) -> bool:
        if not self.collection_id:
            return False
        try:
            response = self.client.search_faces_by_image(
                CollectionId=self.collection_id,
                Image={"Bytes": selfie},
                FaceMatchThreshold=float(settings.FACE_MATCH_THRESHOLD),
                MaxFaces=1,
            )
        except self.client.exceptions.InvalidParameterException:
            # No face detected in the selfie
            return False
        return len(response.get("FaceMatches", [])) > 0


def get_face_matcher() -> FaceMatcher:
    if settings.FACE_MATCHER == "rekognition":
        return RekognitionFaceMatcher()
    return StubFaceMatcher()
