import logging
from typing import Optional

import httpx

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)


def verify_captcha(token: str, remote_ip: Optional[str] = None) -> bool:
    """Check a captcha token with the provider's siteverify endpoint."""
    if not settings.CAPTCHA_SECRET:
        return True

    data = {"secret": settings.CAPTCHA_SECRET, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip

    try:
        response = httpx.post(settings.CAPTCHA_VERIFY_URL, data=data, timeout=10.0)
        logger.info("Captcha verify response [%s]", response.status_code)
        if response.status_code != 200:
            return False
        return bool(response.json().get("success"))
    except httpx.HTTPError as e:
        logger.error("Captcha verify error: %s", str(e))
        return False
