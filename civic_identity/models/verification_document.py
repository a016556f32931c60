from sqlalchemy import Column, String, Text, Integer, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from civic_identity.core.database import Base
from civic_identity.core.timezone import utc_now

class VerificationDocument(Base):
    __tablename__ = "verification_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    verification_id = Column(
        Integer,
        ForeignKey("identity_verifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_type = Column(Enum(
        "id_front", "id_back", "id_supplementary", "selfie",
        name="document_type_enum",
    ), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=False)
    file_hash = Column(String(64), nullable=False, index=True)
    content_type = Column(String(64))
    uploaded_at = Column(DateTime, default=utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    verification = relationship("IdentityVerification", back_populates="documents")
