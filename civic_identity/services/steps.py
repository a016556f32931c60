"""
Step processing for the identity verification workflow.

Each submitted step is checked against the verification's progress state,
turned into a set of field updates by its handler, and committed together
with any documents and user-status changes it produces. A step that fails
validation leaves the record untouched.

Progress order:
    started -> captcha_done -> email_sent -> email_verified -> mfa_pending
    -> mfa_set -> id_uploaded -> liveness_done -> duplicate_checked -> terms_done

'email' may be repeated from email_sent (resend) and 'mfa' from mfa_pending.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from civic_identity.core.captcha import verify_captcha
from civic_identity.core.config import settings
from civic_identity.core.exceptions import InvalidTransition, OtpDeliveryFailed, RateLimited, StepValidationError
from civic_identity.core.face import FaceMatcher, get_face_matcher
from civic_identity.core.otp import generate_otp, hash_otp, otp_matches, send_otp_email
from civic_identity.core.redis import Cache, RateLimiter
from civic_identity.core.security import decrypt_secret, encrypt_secret, hash_content, hash_id_number
from civic_identity.core.storage import FileStorage, get_storage
from civic_identity.core.timezone import utc_now
from civic_identity.core.totp import TotpVerifier, generate_totp_secret, get_totp_verifier, provisioning_uri
from civic_identity.models.identity_verification import IdentityVerification
from civic_identity.services import risk
from civic_identity.services.decision import decide
from civic_identity.services.verification_store import VerificationRecordStore

logger = logging.getLogger(__name__)

# step -> (progress states it may be submitted from, progress state it leads to)
STEP_TRANSITIONS = {
    "captcha": (("started",), "captcha_done"),
    "email": (("captcha_done", "email_sent"), "email_sent"),
    "verify-email": (("email_sent",), "email_verified"),
    "mfa": (("email_verified", "mfa_pending"), "mfa_pending"),
    "verify-totp": (("mfa_pending",), "mfa_set"),
    "id-upload": (("mfa_set",), "id_uploaded"),
    "liveness": (("id_uploaded",), "liveness_done"),
    "duplicate-check": (("liveness_done",), "duplicate_checked"),
    "terms": (("duplicate_checked",), "terms_done"),
}

MAX_ID_FILES = 4
MAX_FILES_PER_STEP = 1

EMAIL_RESEND_MAX = 3
EMAIL_RESEND_WINDOW_SECONDS = 600


@dataclass
class UploadedFile:
    filename: str
    content_type: Optional[str]
    data: bytes


@dataclass
class StepContext:
    ip_address: Optional[str] = None
    now: datetime = field(default_factory=utc_now)


@dataclass
class StepResult:
    updates: Dict[str, Any]
    response: Dict[str, Any]
    user_status: Optional[Dict[str, Any]] = None
    stored_urls: List[str] = field(default_factory=list)
    after_commit: List[Callable[[], Any]] = field(default_factory=list)


class StepProcessor:
    def __init__(
        self,
        store: VerificationRecordStore,
        storage: Optional[FileStorage] = None,
        face_matcher: Optional[FaceMatcher] = None,
        totp_verifier: Optional[TotpVerifier] = None,
    ):
        self.store = store
        self.storage = storage or get_storage()
        self.face_matcher = face_matcher or get_face_matcher()
        self.totp_verifier = totp_verifier or get_totp_verifier()
        self._handlers = {
            "captcha": self._captcha,
            "email": self._email,
            "verify-email": self._verify_email,
            "mfa": self._mfa,
            "verify-totp": self._verify_totp,
            "id-upload": self._id_upload,
            "liveness": self._liveness,
            "duplicate-check": self._duplicate_check,
            "terms": self._terms,
        }

    # -- entry points -----------------------------------------------------

    def process(
        self,
        record: IdentityVerification,
        step: str,
        payload: Optional[Dict[str, Any]] = None,
        files: Optional[List[UploadedFile]] = None,
        context: Optional[StepContext] = None,
    ) -> StepResult:
        """Validate and compute a step's effects without writing the record."""
        payload = payload or {}
        files = files or []
        context = context or StepContext()

        if step not in STEP_TRANSITIONS:
            raise StepValidationError("Invalid verification step")

        if record.status in ("approved", "rejected"):
            raise InvalidTransition(f"Verification is already {record.status}")
        if record.status == "reviewing":
            raise InvalidTransition("Verification is under review")

        allowed_from, next_progress = STEP_TRANSITIONS[step]
        if record.progress not in allowed_from:
            raise InvalidTransition(
                f"Step '{step}' cannot be submitted at this stage ({record.progress})"
            )

        limit = MAX_ID_FILES if step == "id-upload" else MAX_FILES_PER_STEP
        if len(files) > limit:
            raise StepValidationError(f"Too many files. At most {limit} allowed for this step")
        for upload in files:
            self._validate_file(upload)

        # Created up front so uploads written before a handler fails are still known
        result = StepResult(updates={}, response={})
        try:
            self._handlers[step](record, payload, files, context, result)
        except Exception:
            if result.stored_urls:
                self._discard(result)
            raise

        result.updates["progress"] = next_progress
        return result

    def submit(
        self,
        record: IdentityVerification,
        step: str,
        payload: Optional[Dict[str, Any]] = None,
        files: Optional[List[UploadedFile]] = None,
        context: Optional[StepContext] = None,
    ) -> Dict[str, Any]:
        """Process a step and commit its effects atomically."""
        result = self.process(record, step, payload, files, context)

        try:
            self.store.stage_update(record.id, result.updates, expected_version=record.version)
            if result.user_status is not None:
                self.store.stage_user_status(record.user_id, result.user_status)
            self.store.commit()
        except Exception:
            self._discard(result)
            raise

        for callback in result.after_commit:
            callback()

        logger.info("Verification %s completed step %s", record.id, step)
        return result.response

    # -- helpers ----------------------------------------------------------

    def _discard(self, result: StepResult) -> None:
        """Roll back staged rows and delete the files they pointed at."""
        self.store.rollback()
        for url in result.stored_urls:
            try:
                self.storage.delete(url)
            except Exception as e:
                logger.warning("Failed to remove orphaned upload %s: %s", url, e)

    def _validate_file(self, upload: UploadedFile) -> None:
        if upload.content_type not in settings.allowed_upload_types_list:
            raise StepValidationError("Invalid file type. Only JPEG, PNG, and PDF files are allowed.")
        if not upload.data:
            raise StepValidationError("Uploaded file is empty")
        if len(upload.data) > settings.MAX_UPLOAD_BYTES:
            raise StepValidationError("File size must be less than 10MB")

    def _store_document(self, record: IdentityVerification, document_type: str,
                        upload: UploadedFile, result: StepResult, now: datetime) -> str:
        ext = os.path.splitext(upload.filename or "")[1].lower()
        file_name = f"{record.id}_{document_type}_{uuid4().hex}{ext}"
        url = self.storage.save(f"identity/{file_name}", upload.data, upload.content_type)
        result.stored_urls.append(url)

        self.store.add_document(
            verification_id=record.id,
            document_type=document_type,
            file_name=file_name,
            file_url=url,
            file_hash=hash_content(upload.data),
            content_type=upload.content_type,
            now=now,
        )
        return url

    def _read_stored(self, url: Optional[str]) -> Optional[bytes]:
        if not url:
            return None
        return self.storage.read(url)

    # -- step handlers ----------------------------------------------------

    def _captcha(self, record, payload, files, context, result: StepResult) -> None:
        token = payload.get("captchaToken")
        if not token:
            raise StepValidationError("Captcha token required")
        if not verify_captcha(token, context.ip_address):
            raise StepValidationError("Captcha verification failed")

        result.updates["captcha_token"] = token
        result.response = {"success": True, "message": "Captcha verified"}

    def _email(self, record, payload, files, context, result: StepResult) -> None:
        identifier = str(record.id)
        is_allowed, _ = RateLimiter.check_rate_limit(
            identifier=identifier,
            action="send_email_otp",
            max_requests=EMAIL_RESEND_MAX,
            window_seconds=EMAIL_RESEND_WINDOW_SECONDS,
        )
        if not is_allowed:
            retry_after = RateLimiter.get_remaining_time(identifier, "send_email_otp")
            raise RateLimited(
                f"Too many OTP requests. Please try again in {retry_after} seconds.",
                retry_after=retry_after,
            )

        otp = generate_otp()
        delivered = send_otp_email(record.email, otp)

        result.response = {"success": True, "message": "OTP sent to email"}
        if settings.is_development_mode:
            logger.info("OTP for verification %s: %s", record.id, otp)
            result.response["demoOtp"] = otp
        elif not delivered:
            logger.error("OTP email for verification %s was not delivered", record.id)
            raise OtpDeliveryFailed()

        result.updates.update({
            "otp_code_hash": hash_otp(otp),
            "otp_expires_at": context.now + timedelta(minutes=settings.OTP_EXPIRY_MINUTES),
        })
        result.after_commit.append(lambda: RateLimiter.reset(identifier, "verify_email"))

    def _verify_email(self, record, payload, files, context, result: StepResult) -> None:
        identifier = str(record.id)
        if RateLimiter.peek(identifier, "verify_email") >= settings.OTP_MAX_ATTEMPTS:
            retry_after = RateLimiter.get_remaining_time(identifier, "verify_email")
            raise RateLimited(
                "Too many failed attempts. Please request a new code.",
                retry_after=retry_after,
            )

        code = str(payload.get("otpCode") or "").strip()
        valid = (
            bool(code)
            and record.otp_code_hash is not None
            and record.otp_expires_at is not None
            and context.now < record.otp_expires_at
            and otp_matches(code, record.otp_code_hash)
        )
        if not valid:
            RateLimiter.check_rate_limit(
                identifier=identifier,
                action="verify_email",
                max_requests=settings.OTP_MAX_ATTEMPTS,
                window_seconds=settings.OTP_ATTEMPT_WINDOW_SECONDS,
            )
            raise StepValidationError("Invalid or expired OTP code")

        result.updates.update({"email_verified": True, "otp_code_hash": None, "otp_expires_at": None})
        result.response = {"success": True, "message": "Email verified"}
        result.after_commit.append(lambda: RateLimiter.reset(identifier, "verify_email"))

    def _mfa(self, record, payload, files, context, result: StepResult) -> None:
        secret = generate_totp_secret()
        result.updates.update({"totp_secret_encrypted": encrypt_secret(secret), "totp_verified": False})
        result.response = {
            "success": True,
            "message": "TOTP setup initiated",
            "qrCodeUrl": provisioning_uri(secret, record.email),
        }

    def _verify_totp(self, record, payload, files, context, result: StepResult) -> None:
        code = str(payload.get("totpCode") or "").strip()
        secret = decrypt_secret(record.totp_secret_encrypted)
        if not self.totp_verifier.verify(secret, code):
            raise StepValidationError("Invalid TOTP code")

        result.updates["totp_verified"] = True
        result.response = {"success": True, "message": "Two-factor authentication enabled"}

    def _id_upload(self, record, payload, files, context, result: StepResult) -> None:
        if len(files) < 2:
            raise StepValidationError("Both front and back ID images required")

        for index, upload in enumerate(files):
            if index == 0:
                document_type = "id_front"
            elif index == 1:
                document_type = "id_back"
            else:
                document_type = "id_supplementary"

            url = self._store_document(record, document_type, upload, result, context.now)
            if document_type == "id_front":
                result.updates["id_front_url"] = url
            elif document_type == "id_back":
                result.updates["id_back_url"] = url

        result.response = {
            "success": True,
            "message": "ID documents uploaded",
            "documentsStored": len(files),
        }

    def _liveness(self, record, payload, files, context, result: StepResult) -> None:
        if len(files) != 1:
            raise StepValidationError("Selfie image required")

        selfie = files[0]
        url = self._store_document(record, "selfie", selfie, result, context.now)

        score = self.face_matcher.match_score(selfie.data, self._read_stored(record.id_front_url))
        score = max(0, min(100, int(score)))

        result.updates.update({"selfie_url": url, "face_match_score": score})
        result.response = {
            "success": True,
            "faceMatchScore": score,
            "message": "Face match successful" if score >= settings.FACE_MATCH_THRESHOLD else "Face match failed",
        }

    def _duplicate_check(self, record, payload, files, context, result: StepResult) -> None:
        id_number = str(payload.get("idNumber") or "").strip()
        if not id_number:
            raise StepValidationError("ID number required")

        id_hash = hash_id_number(id_number)
        duplicate_id = self.store.count_by_id_hash(
            id_hash, exclude_id=record.id, exclude_user_id=record.user_id
        ) > 0
        duplicate_ip = (
            self.store.count_by_ip(record.ip_address, exclude_id=record.id) > settings.IP_DUPLICATE_THRESHOLD
        )
        selfie = self._read_stored(record.selfie_url)
        duplicate_face = bool(selfie) and self.face_matcher.find_duplicate_face(selfie)

        assessment = risk.score(SimpleNamespace(
            duplicate_id_check=duplicate_id,
            duplicate_face_check=duplicate_face,
            duplicate_ip_check=duplicate_ip,
            face_match_score=record.face_match_score,
        ))

        existing = list(record.flagged_reasons or [])
        flagged = existing + [reason for reason in assessment.reasons if reason not in existing]

        high_risk = assessment.score > settings.AUTO_APPROVE_MAX_RISK
        result.updates.update({
            "id_number_hash": id_hash,
            "duplicate_id_check": duplicate_id,
            "duplicate_face_check": duplicate_face,
            "duplicate_ip_check": duplicate_ip,
            "risk_score": assessment.score,
            "flagged_reasons": flagged,
        })
        result.response = {
            "success": True,
            "riskScore": assessment.score,
            "flaggedReasons": assessment.reasons,
            "message": "High risk detected - manual review required" if high_risk else "Duplicate check passed",
        }

    def _terms(self, record, payload, files, context, result: StepResult) -> None:
        if payload.get("termsAgreed") is not True:
            raise StepValidationError("You must agree to the terms to continue")
        signature = str(payload.get("digitalSignature") or "").strip()
        if not signature:
            raise StepValidationError("Digital signature required")

        decision = decide(record.id, record.risk_score, context.now)
        result.updates.update({
            "terms_agreed": True,
            "digital_signature": signature,
            "terms_agreed_at": context.now,
        })
        result.updates.update(decision.record_updates)

        if decision.auto_approved:
            message = "Identity verification completed successfully!"
        else:
            message = "Verification submitted for manual review. You will be notified within 24-48 hours."

        user_id = record.user_id
        result.response = {"success": True, "autoApproved": decision.auto_approved, "message": message}
        result.user_status = decision.user_status
        result.after_commit.append(lambda: Cache.clear_user_verification(user_id))
