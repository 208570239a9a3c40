from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from app.domain.errors import AuthenticationError

SERVICE_TOKEN_SECRET = os.getenv("SERVICE_TOKEN_SECRET", "dev-service-secret-change-me")
SERVICE_TOKEN_ISSUER = os.getenv("SERVICE_TOKEN_ISSUER", "access-control")
SERVICE_TOKEN_AUDIENCE = os.getenv("SERVICE_TOKEN_AUDIENCE", "access-control")
SERVICE_TOKEN_EXPIRES_MIN = int(os.getenv("SERVICE_TOKEN_EXPIRES_MIN", "5"))
SERVICE_TOKEN_ALGORITHM = "HS256"

ACTION_TOKEN_SECRET = os.getenv("ACTION_TOKEN_SECRET", "dev-action-secret-change-me")
ACTION_TOKEN_EXPIRES_MIN = int(os.getenv("ACTION_TOKEN_EXPIRES_MIN", "60"))

PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "390000"))
PASSWORD_HASH_SCHEME = "pbkdf2_sha256"


class InternalTokenService:
    def __init__(
        self,
        secret: str = SERVICE_TOKEN_SECRET,
        *,
        issuer: str = SERVICE_TOKEN_ISSUER,
        audience: str = SERVICE_TOKEN_AUDIENCE,
        expires_minutes: int = SERVICE_TOKEN_EXPIRES_MIN,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._expires_minutes = expires_minutes

    def new_token(self, audience: str | None = None) -> str:
        now = datetime.now(UTC)
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "aud": audience or self._audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=self._expires_minutes)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=SERVICE_TOKEN_ALGORITHM)

    def check_token(self, token: str) -> dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[SERVICE_TOKEN_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("invalid internal token") from exc
        if not isinstance(claims, dict):
            raise AuthenticationError("invalid internal token payload")
        return claims


def create_action_token(
    *,
    subject_id: str,
    purpose: str,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or ACTION_TOKEN_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "sub": subject_id,
        "purpose": purpose,
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, ACTION_TOKEN_SECRET, algorithm="HS256")


def decode_action_token(token: str, purpose: str) -> str:
    try:
        decoded = jwt.decode(token, ACTION_TOKEN_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("invalid or expired link") from exc
    if decoded.get("purpose") != purpose or not isinstance(decoded.get("sub"), str):
        raise AuthenticationError("invalid or expired link")
    return str(decoded["sub"])


def hash_password(raw_password: str, *, iterations: int = PASSWORD_HASH_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), salt.encode(), iterations)
    return f"{PASSWORD_HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(raw_password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        scheme, iterations, salt, expected = password_hash.split("$", 3)
    except ValueError:
        return False
    if scheme != PASSWORD_HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)
