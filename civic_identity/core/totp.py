"""
TOTP support for the MFA step, backed by pyotp.

Two verifiers are available, selected with TOTP_VERIFIER:
    rfc6238  - real time-based codes, 30s step, +/-1 step drift
    stub     - accepts any 6-character code (legacy demo behaviour)
"""

from typing import Optional, Protocol

import pyotp

from civic_identity.core.config import settings

TOTP_DIGITS = 6


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account: str, issuer: Optional[str] = None) -> str:
    """otpauth:// URI rendered as a QR code by the client"""
    return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=issuer or settings.TOTP_ISSUER)


def totp_at(secret: str, for_time: float) -> str:
    return pyotp.TOTP(secret).at(int(for_time))


class TotpVerifier(Protocol):
    def verify(self, secret: str, code: str, for_time: Optional[float] = None) -> bool:
        ...


class Rfc6238Verifier:
    def __init__(self, valid_window: int = 1):
        self.valid_window = valid_window

    def verify(self, secret: str, code: str, for_time: Optional[float] = None) -> bool:
        if not code or len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        totp = pyotp.TOTP(secret)
        if for_time is None:
            return totp.verify(code, valid_window=self.valid_window)
        return totp.verify(code, for_time=int(for_time), valid_window=self.valid_window)


class LengthOnlyTotpVerifier:
    def verify(self, secret: str, code: str, for_time: Optional[float] = None) -> bool:
        return bool(code) and len(code) == TOTP_DIGITS


def get_totp_verifier() -> TotpVerifier:
    if settings.TOTP_VERIFIER == "stub":
        return LengthOnlyTotpVerifier()
    return Rfc6238Verifier()
