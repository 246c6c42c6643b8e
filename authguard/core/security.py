# authguard/core/security.py

import base64
import json
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import List, Optional

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from fastapi import HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext

from authguard.core.config import PasswordRequirementsConfig, settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

LINK_PURPOSES = ("recovery", "email_confirmation")


# -----------------------------
# HASHING FUNCTIONS
# -----------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def validate_password_strength(password: str, requirements: PasswordRequirementsConfig) -> List[str]:
    """Return the list of unmet requirements (empty when the password is fine)."""
    problems = []

    if len(password) < requirements.min_length:
        problems.append(f"Password must be at least {requirements.min_length} characters")
    if len(password) > requirements.max_length:
        problems.append(f"Password must be at most {requirements.max_length} characters")
    if requirements.require_lowercase and not re.search(r"[a-z]", password):
        problems.append("Password must contain a lowercase letter")
    if requirements.require_uppercase and not re.search(r"[A-Z]", password):
        problems.append("Password must contain an uppercase letter")
    if requirements.require_numbers and not re.search(r"\d", password):
        problems.append("Password must contain a number")
    if requirements.require_symbols and not re.search(r"[^A-Za-z0-9]", password):
        problems.append("Password must contain a symbol")

    return problems


# -----------------------------
# CREATE JWT TOKEN
# -----------------------------
def create_access_token(data: dict, expires_minutes: Optional[int] = None):
    """`data` carries id, email and sid (device session id)."""
    to_encode = data.copy()

    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# -----------------------------
# VERIFY / DECODE JWT TOKEN
# -----------------------------
def decode_access_token(token: str):
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )

    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# -----------------------------
# IDENTITY ASSERTIONS (OAuth bridge)
# -----------------------------
def decode_identity_assertion(assertion: str) -> dict:
    """
    The OAuth bridge signs {provider, provider_id, email, name} with the
    shared secret once the provider handshake is done.
    """
    try:
        claims = jwt.decode(
            assertion,
            settings.IDENTITY_ASSERTION_SECRET,
            algorithms=["HS256"],
        )
    except jwt.InvalidTokenError:
        raise ValueError("Invalid identity assertion")

    for field in ("provider", "provider_id", "email"):
        if not claims.get(field):
            raise ValueError(f"Identity assertion missing {field}")

    return claims


# -----------------------------
# EMAIL LINK TOKENS
# AES-GCM sealed {user_id, purpose, iat, jti}; jti is redeemed once
# -----------------------------
def _link_key() -> bytes:
    return bytes.fromhex(settings.LINK_TOKEN_SECRET)


def create_link_token(user_id: str, purpose: str) -> str:
    if purpose not in LINK_PURPOSES:
        raise ValueError(f"Unknown link purpose: {purpose}")

    payload = json.dumps({
        "user_id": user_id,
        "purpose": purpose,
        "iat": int(time.time()),
        "jti": secrets.token_urlsafe(16),
    })
    nonce = os.urandom(12)
    sealed = AESGCM(_link_key()).encrypt(nonce, payload.encode(), purpose.encode())
    return base64.urlsafe_b64encode(nonce + sealed).decode().rstrip("=")


def decode_link_token(token: str, purpose: str, max_age_minutes: int) -> dict:
    """Return the sealed claims, or raise ValueError. Does not redeem the jti."""
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        nonce, sealed = raw[:12], raw[12:]
        payload = json.loads(AESGCM(_link_key()).decrypt(nonce, sealed, purpose.encode()))
    except (InvalidTag, ValueError, TypeError):
        raise ValueError("Invalid or expired link")

    if payload.get("purpose") != purpose or not payload.get("jti"):
        raise ValueError("Invalid or expired link")

    if time.time() - payload.get("iat", 0) > max_age_minutes * 60:
        raise ValueError("Invalid or expired link")

    return payload
