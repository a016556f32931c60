import hashlib
from functools import lru_cache
from cryptography.fernet import Fernet
from civic_identity.core.config import settings


@lru_cache(maxsize=1)
def _fernet() -> Fernet:
    return Fernet(settings.FERNET_KEY)

def hash_id_number(id_number: str) -> str:
    normalized = id_number.strip().upper().replace(" ", "").replace("-", "")
    return hashlib.sha256(
        f"{normalized}{settings.ID_HASH_SALT}".encode()
    ).hexdigest()

def hash_content(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

def encrypt_secret(secret: str) -> str:
    return _fernet().encrypt(secret.encode()).decode()

def decrypt_secret(encrypted_secret: str) -> str:
    return _fernet().decrypt(encrypted_secret.encode()).decode()
