from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    APP_ENV: str = "development"

    # "demo" authenticates every request as DEMO_USER_ID; never allowed in production
    AUTH_MODE: str = "production"
    DEMO_USER_ID: str = "demo-user"
    DEMO_USER_EMAIL: str = "demo@civicos.local"

    DATABASE_URL: str = "sqlite:///./civic_identity.db"

    CORS_ORIGINS: str = "http://localhost:3000"

    # Secrets at rest
    FERNET_KEY: str = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
    ID_HASH_SALT: str = ""

    # Auth
    JWT_SECRET_KEY: str = "change-me"
    INTERNAL_API_KEY: str = "change-me-internal"
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD_HASH: str = ""

    # Email OTP
    OTP_EXPIRY_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5
    OTP_ATTEMPT_WINDOW_SECONDS: int = 600
    SENDGRID_API_KEY: Optional[str] = None
    SENDER_EMAIL: str = "verify@civicos.local"

    # Verification policy
    VERIFICATION_RETENTION_HOURS: int = 72
    AUTO_APPROVE_MAX_RISK: int = 50
    FACE_MATCH_THRESHOLD: int = 75
    IP_DUPLICATE_THRESHOLD: int = 3
    ADMIN_TRUST_SCORE: int = 85

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    ALLOWED_UPLOAD_TYPES: str = "image/jpeg,image/jpg,image/png,application/pdf"
    STORAGE_BACKEND: str = "local"
    UPLOAD_DIR: str = "uploads"

    AWS_REGION: str = "us-east-1"
    AWS_S3_BUCKET: Optional[str] = None
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None

    # Verification providers
    FACE_MATCHER: str = "stub"
    STUB_FACE_MATCH_SCORE: int = 90
    REKOGNITION_COLLECTION_ID: Optional[str] = None
    TOTP_VERIFIER: str = "rfc6238"
    TOTP_ISSUER: str = "CivicOS"

    # Captcha (skipped when no secret is configured)
    CAPTCHA_VERIFY_URL: str = "https://hcaptcha.com/siteverify"
    CAPTCHA_SECRET: Optional[str] = None

    # Redis Configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    class Config:
        env_file = ".env"

    @property
    def is_development_mode(self) -> bool:
        return self.APP_ENV != "production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def allowed_upload_types_list(self) -> list[str]:
        """Parse comma-separated MIME types into list"""
        return [t.strip() for t in self.ALLOWED_UPLOAD_TYPES.split(",") if t.strip()]

settings = Settings()
