import secrets
import string
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError

from config import settings


# ── JWT ───────────────────────────────────────────────────────────────────────
# Les tokens sont émis par le service d'auth ; ici on ne fait que les vérifier.
# create_access_token sert aux scripts de seed et aux tests.
ALGORITHM = "HS256"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Lève JWTError si invalide ou expiré."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])


def verify_access_token(token: str) -> Optional[dict]:
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None


# ── Identifiants lisibles ─────────────────────────────────────────────────────
def generate_delivery_code() -> str:
    """Identifiant humain de livraison : DEL-20261019-7K2QX9"""
    chars = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(chars) for _ in range(6))
    return f"DEL-{datetime.now(timezone.utc):%Y%m%d}-{suffix}"
