from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr


class StartVerificationRequest(BaseModel):
    email: Optional[EmailStr] = None


class StartVerificationResponse(BaseModel):
    success: bool = True
    verificationId: int
    message: str


class Permissions(BaseModel):
    canVote: bool = False
    canComment: bool = False
    canCreatePetitions: bool = False
    canAccessFOI: bool = False


class VerificationStatusResponse(BaseModel):
    isVerified: bool = False
    verificationLevel: str = "none"
    verifiedAt: Optional[datetime] = None
    permissions: Permissions = Permissions()


class RejectRequest(BaseModel):
    reason: str


class ReviewResponse(BaseModel):
    success: bool = True
    message: str


class VerificationDocumentResponse(BaseModel):
    id: int
    document_type: str
    file_name: str
    file_url: str
    file_hash: str
    content_type: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VerificationResponse(BaseModel):
    id: int
    user_id: str
    email: str
    status: str
    progress: str
    email_verified: bool = False
    totp_verified: bool = False
    id_front_url: Optional[str] = None
    id_back_url: Optional[str] = None
    selfie_url: Optional[str] = None
    face_match_score: Optional[int] = None
    duplicate_id_check: bool = False
    duplicate_face_check: bool = False
    duplicate_ip_check: bool = False
    risk_score: Optional[int] = None
    flagged_reasons: List[str] = []
    terms_agreed: bool = False
    terms_agreed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geolocation: Optional[str] = None
    submitted_at: Optional[datetime] = None
    auto_delete_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VerificationDetailResponse(VerificationResponse):
    """Extended response with uploaded documents"""
    documents: List[VerificationDocumentResponse] = []


class PaginatedVerificationsResponse(BaseModel):
    total: int
    page: int
    page_size: int
    total_pages: int
    items: List[VerificationResponse]
    message: str


class PurgeResponse(BaseModel):
    success: bool = True
    purged: int
    message: str
