import hashlib
import hmac
import logging
import secrets

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)


def generate_otp() -> str:
    return str(secrets.randbelow(900000) + 100000)


def hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.encode()).hexdigest()


def otp_matches(otp_input: str, otp_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(otp_input), otp_hash)


def send_otp_email(email: str, otp: str) -> bool:
    """Send the verification code by email using SendGrid."""
    if not settings.SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not configured, OTP email to %s not sent", email)
        return False

    message = Mail(
        from_email=settings.SENDER_EMAIL,
        to_emails=email,
        subject="Your CivicOS verification code",
        plain_text_content=(
            f"Your CivicOS verification code is: {otp}\n"
            f"It expires in {settings.OTP_EXPIRY_MINUTES} minutes."
        ),
    )

    try:
        response = SendGridAPIClient(settings.SENDGRID_API_KEY).send(message)
        logger.info("OTP email response [%s] for %s", response.status_code, email)
        return response.status_code in (200, 202)
    except Exception as e:
        logger.error("OTP email error for %s: %s", email, str(e))
        return False
