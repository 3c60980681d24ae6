from datetime import datetime, timedelta
from jose import jwt, JWTError
from db import settings
import hashlib
import hmac

ALGO = "HS256"
HASH_PREFIX = "sha256$"

def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

def hash_password(p: str) -> str:
    """
    Salted SHA-256 with JWT_SECRET as the salt.
    Format: sha256$<hex>
    """
    salt = settings.JWT_SECRET or "dev_salt"
    return HASH_PREFIX + _sha256_hex(f"{salt}|{p}")

def verify_password(p: str, h: str) -> bool:
    if not h or not h.startswith(HASH_PREFIX):
        return False
    return hmac.compare_digest(hash_password(p), h)

def create_access_token(data: dict, minutes: int | None = None) -> str:
    expire = datetime.utcnow() + timedelta(minutes=minutes or settings.JWT_EXPIRE_MINUTES)
    payload = {**data, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])
    except JWTError:
        raise ValueError("Invalid token")
