"""
Persistence for identity verification attempts, their uploaded documents
and the per-user verification status they produce.

Absence is reported as None; callers decide whether that is a 404.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from civic_identity.core.config import settings
from civic_identity.core.exceptions import ConcurrentUpdate
from civic_identity.core.storage import FileStorage
from civic_identity.core.timezone import utc_now
from civic_identity.models.identity_verification import IdentityVerification
from civic_identity.models.user_verification import UserVerificationStatus
from civic_identity.models.verification_document import VerificationDocument

logger = logging.getLogger(__name__)


class VerificationRecordStore:
    def __init__(self, db: Session):
        self.db = db

    # -- verification records --------------------------------------------

    def create(self, user_id: str, email: str, metadata: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None) -> IdentityVerification:
        now = now or utc_now()
        metadata = metadata or {}
        record = IdentityVerification(
            user_id=user_id,
            email=email,
            status="pending",
            progress="started",
            version=1,
            flagged_reasons=[],
            ip_address=metadata.get("ip_address"),
            user_agent=metadata.get("user_agent") or "",
            geolocation=metadata.get("geolocation") or "Unknown",
            submitted_at=now,
            updated_at=now,
            auto_delete_at=now + timedelta(hours=settings.VERIFICATION_RETENTION_HOURS),
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        logger.info("Created verification %s for user %s", record.id, user_id)
        return record

    def start_or_resume(self, user_id: str, email: str,
                        metadata: Optional[Dict[str, Any]] = None) -> Tuple[IdentityVerification, bool]:
        """
        Return the user's pending verification, creating one if needed.

        The partial unique index on (user_id) WHERE status = 'pending' makes
        a concurrent double-create fail; the loser re-reads the winner's row.
        """
        existing = self.find_pending_for_user(user_id)
        if existing:
            return existing, False
        try:
            return self.create(user_id, email, metadata), True
        except IntegrityError:
            self.db.rollback()
            existing = self.find_pending_for_user(user_id)
            if existing is None:
                raise
            return existing, False

    def get(self, verification_id: int) -> Optional[IdentityVerification]:
        return self.db.get(IdentityVerification, verification_id)

    def get_for_user(self, verification_id: int, user_id: str) -> Optional[IdentityVerification]:
        return (
            self.db.query(IdentityVerification)
            .filter(
                IdentityVerification.id == verification_id,
                IdentityVerification.user_id == user_id,
            )
            .first()
        )

    def find_pending_for_user(self, user_id: str) -> Optional[IdentityVerification]:
        return (
            self.db.query(IdentityVerification)
            .filter(
                IdentityVerification.user_id == user_id,
                IdentityVerification.status == "pending",
            )
            .first()
        )

    def stage_update(self, verification_id: int, fields: Dict[str, Any],
                     expected_version: Optional[int] = None) -> bool:
        """
        Issue the UPDATE without committing, so callers can group it with
        other writes. Returns False when the row does not exist.
        """
        query = self.db.query(IdentityVerification).filter(IdentityVerification.id == verification_id)
        if expected_version is not None:
            query = query.filter(IdentityVerification.version == expected_version)

        values = dict(fields)
        values["version"] = IdentityVerification.version + 1
        values["updated_at"] = utc_now()
        updated = query.update(values, synchronize_session=False)

        if updated == 0:
            if expected_version is not None and self.db.query(
                self.db.query(IdentityVerification).filter(IdentityVerification.id == verification_id).exists()
            ).scalar():
                raise ConcurrentUpdate()
            return False
        return True

    def update(self, verification_id: int, fields: Dict[str, Any],
               expected_version: Optional[int] = None) -> Optional[IdentityVerification]:
        try:
            found = self.stage_update(verification_id, fields, expected_version)
        except ConcurrentUpdate:
            self.db.rollback()
            raise
        if not found:
            self.db.rollback()
            return None
        self.db.commit()
        return self.refresh(verification_id)

    def refresh(self, verification_id: int) -> Optional[IdentityVerification]:
        record = self.get(verification_id)
        if record is not None:
            self.db.refresh(record)
        return record

    def list_pending(self, status: str = "reviewing", page: int = 1,
                     page_size: int = 20) -> Tuple[List[IdentityVerification], int]:
        query = self.db.query(IdentityVerification).filter(IdentityVerification.status == status)
        total = query.count()
        records = (
            query.order_by(desc(IdentityVerification.submitted_at), desc(IdentityVerification.id))
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return records, total

    def purge_expired(self, now: Optional[datetime] = None, storage: Optional[FileStorage] = None) -> int:
        """
        Delete pending verifications past their auto-delete deadline,
        together with their documents. Returns the number of records removed.
        """
        now = now or utc_now()
        expired = (
            self.db.query(IdentityVerification)
            .filter(
                IdentityVerification.status == "pending",
                IdentityVerification.auto_delete_at <= now,
            )
            .all()
        )
        file_urls = [doc.file_url for record in expired for doc in record.documents]

        for record in expired:
            self.db.delete(record)
        self.db.commit()

        if storage is not None:
            for url in file_urls:
                try:
                    storage.delete(url)
                except Exception as e:
                    logger.warning("Failed to delete stored file %s: %s", url, e)

        if expired:
            logger.info("Purged %s expired verification(s), %s file(s)", len(expired), len(file_urls))
        return len(expired)

    # -- duplicate lookups ------------------------------------------------

    def count_by_id_hash(self, id_number_hash: str, exclude_id: Optional[int] = None,
                         exclude_user_id: Optional[str] = None) -> int:
        query = self.db.query(func.count(IdentityVerification.id)).filter(
            IdentityVerification.id_number_hash == id_number_hash
        )
        if exclude_id is not None:
            query = query.filter(IdentityVerification.id != exclude_id)
        # A user's own earlier attempts are retries, not duplicates
        if exclude_user_id is not None:
            query = query.filter(IdentityVerification.user_id != exclude_user_id)
        return query.scalar() or 0

    def count_by_ip(self, ip_address: Optional[str], exclude_id: Optional[int] = None) -> int:
        if not ip_address:
            return 0
        query = self.db.query(func.count(IdentityVerification.id)).filter(
            IdentityVerification.ip_address == ip_address
        )
        if exclude_id is not None:
            query = query.filter(IdentityVerification.id != exclude_id)
        return query.scalar() or 0

    # -- documents --------------------------------------------------------

    def add_document(self, verification_id: int, document_type: str, file_name: str,
                     file_url: str, file_hash: str, content_type: Optional[str] = None,
                     now: Optional[datetime] = None) -> VerificationDocument:
        """Stage a document row; committed with the step's record update."""
        now = now or utc_now()
        document = VerificationDocument(
            verification_id=verification_id,
            document_type=document_type,
            file_name=file_name,
            file_url=file_url,
            file_hash=file_hash,
            content_type=content_type,
            uploaded_at=now,
            expires_at=now + timedelta(hours=settings.VERIFICATION_RETENTION_HOURS),
        )
        self.db.add(document)
        return document

    def documents_for(self, verification_id: int) -> List[VerificationDocument]:
        return (
            self.db.query(VerificationDocument)
            .filter(VerificationDocument.verification_id == verification_id)
            .order_by(VerificationDocument.id)
            .all()
        )

    # -- user verification status -----------------------------------------

    def get_user_status(self, user_id: str) -> Optional[UserVerificationStatus]:
        return self.db.get(UserVerificationStatus, user_id)

    def stage_user_status(self, user_id: str, fields: Dict[str, Any]) -> UserVerificationStatus:
        """
        Insert-or-update keyed on user_id, without committing.

        The insert runs in a savepoint: if a concurrent approval created the
        row first, the savepoint is rolled back and the row is updated instead,
        keeping the rest of the caller's transaction.
        """
        now = utc_now()
        status = self.get_user_status(user_id)
        if status is None:
            try:
                with self.db.begin_nested():
                    status = UserVerificationStatus(user_id=user_id, created_at=now)
                    self._apply_user_status(status, fields, now)
                    self.db.add(status)
                return status
            except IntegrityError:
                logger.info("User status for %s was created concurrently; updating it", user_id)
                status = self.get_user_status(user_id)
                if status is None:
                    raise

        self._apply_user_status(status, fields, now)
        self.db.flush()
        return status

    @staticmethod
    def _apply_user_status(status: UserVerificationStatus, fields: Dict[str, Any], now: datetime) -> None:
        for key, value in fields.items():
            setattr(status, key, value)
        status.last_attempt_at = now
        status.updated_at = now

    def upsert_user_status(self, user_id: str, fields: Dict[str, Any]) -> UserVerificationStatus:
        status = self.stage_user_status(user_id, fields)
        self.db.commit()
        self.db.refresh(status)
        return status

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
