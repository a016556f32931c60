from sqlalchemy import Column, String, Text, Integer, DateTime, Boolean, Enum, JSON, Index, text
from sqlalchemy.orm import relationship
from civic_identity.core.database import Base
from civic_identity.core.timezone import utc_now

VERIFICATION_STATUSES = ("pending", "reviewing", "approved", "rejected")
TERMINAL_STATUSES = ("approved", "rejected")


class IdentityVerification(Base):
    __tablename__ = "identity_verifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    email = Column(String(320), nullable=False)

    status = Column(Enum(*VERIFICATION_STATUSES, name="verification_status_enum"),
                    default="pending", nullable=False, index=True)
    progress = Column(String(32), default="started", nullable=False)
    version = Column(Integer, default=1, nullable=False)

    # Step artifacts
    captcha_token = Column(Text)
    otp_code_hash = Column(String(64))
    otp_expires_at = Column(DateTime)
    email_verified = Column(Boolean, default=False, nullable=False)
    totp_secret_encrypted = Column(Text)
    totp_verified = Column(Boolean, default=False, nullable=False)
    id_front_url = Column(Text)
    id_back_url = Column(Text)
    selfie_url = Column(Text)
    face_match_score = Column(Integer)
    id_number_hash = Column(String(64), index=True)
    duplicate_id_check = Column(Boolean, default=False, nullable=False)
    duplicate_face_check = Column(Boolean, default=False, nullable=False)
    duplicate_ip_check = Column(Boolean, default=False, nullable=False)
    risk_score = Column(Integer)
    flagged_reasons = Column(JSON, default=list, nullable=False)
    terms_agreed = Column(Boolean, default=False, nullable=False)
    digital_signature = Column(Text)
    terms_agreed_at = Column(DateTime)

    # Review
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    rejection_reason = Column(Text)

    # Lifecycle metadata
    ip_address = Column(String(64), index=True)
    user_agent = Column(Text)
    geolocation = Column(String(64))
    submitted_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
    auto_delete_at = Column(DateTime, nullable=False)

    documents = relationship(
        "VerificationDocument",
        back_populates="verification",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # At most one open attempt per user
        Index(
            "uq_identity_verifications_pending_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )
