from sqlalchemy import Column, String, Boolean, DateTime, Integer
from civic_identity.core.database import Base
from civic_identity.core.timezone import utc_now

class UserVerificationStatus(Base):
    __tablename__ = "user_verification_status"

    user_id = Column(String(64), primary_key=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    verification_level = Column(String(32), default="none", nullable=False)
    verified_at = Column(DateTime)
    last_verification_id = Column(Integer)
    can_vote = Column(Boolean, default=False, nullable=False)
    can_comment = Column(Boolean, default=False, nullable=False)
    can_create_petitions = Column(Boolean, default=False, nullable=False)
    can_access_foi = Column(Boolean, default=False, nullable=False)
    trust_score = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
