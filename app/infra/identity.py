from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

import jwt
from redis import Redis

from app.domain.errors import ConflictError, NotFoundError
from app.infra.auth import hash_password

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))


@dataclass(frozen=True)
class VerifiedCredential:
    subject_id: str
    valid: bool


class IdentityProvider(Protocol):
    def verify_credential(self, token: str) -> VerifiedCredential: ...

    def issue_token(self, subject_id: str) -> str: ...

    def revoke_sessions(self, subject_id: str) -> None: ...

    def create_identity(self, email: str, password: str, display_name: str) -> str: ...

    def delete_identity(self, subject_id: str) -> None: ...

    def set_password(self, subject_id: str, new_password: str) -> None: ...

    def lookup_subject_id_by_email(self, email: str) -> str | None: ...


def _subject_key(subject_id: str) -> str:
    return f"identity:subject:{subject_id}"


def _email_key(email: str) -> str:
    return f"identity:email:{email.strip().lower()}"


def _revoked_key(subject_id: str) -> str:
    return f"identity:revoked:{subject_id}"


# Revocation is tracked in milliseconds so a token minted in the same second still counts.
def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class RedisIdentityProvider:
    def __init__(
        self,
        redis: Redis,
        *,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALGORITHM,
        expires_minutes: int = JWT_EXPIRES_MIN,
    ) -> None:
        self._redis = redis
        self._secret = secret
        self._algorithm = algorithm
        self._expires_minutes = expires_minutes

    def issue_token(self, subject_id: str) -> str:
        now = datetime.now(UTC)
        payload: dict[str, Any] = {
            "sub": subject_id,
            "iat": int(now.timestamp()),
            "iat_ms": _millis(now),
            "exp": int((now + timedelta(minutes=self._expires_minutes)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify_credential(self, token: str) -> VerifiedCredential:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.InvalidTokenError:
            return VerifiedCredential(subject_id="", valid=False)
        subject_id = claims.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            return VerifiedCredential(subject_id="", valid=False)
        revoked_at = self._redis.get(_revoked_key(subject_id))
        issued_ms = int(claims.get("iat_ms", int(claims.get("iat", 0)) * 1000))
        if revoked_at is not None and issued_ms <= int(revoked_at):
            return VerifiedCredential(subject_id=subject_id, valid=False)
        return VerifiedCredential(subject_id=subject_id, valid=True)

    def revoke_sessions(self, subject_id: str) -> None:
        self._redis.set(_revoked_key(subject_id), _millis(datetime.now(UTC)))

    def create_identity(self, email: str, password: str, display_name: str) -> str:
        subject_id = uuid4().hex
        if not self._redis.set(_email_key(email), subject_id, nx=True):
            raise ConflictError("identity already exists for email")
        self._redis.hset(
            _subject_key(subject_id),
            mapping={
                "email": email,
                "display_name": display_name,
                "password_hash": hash_password(password),
            },
        )
        return subject_id

    def delete_identity(self, subject_id: str) -> None:
        record = self._redis.hgetall(_subject_key(subject_id))
        keys = [_subject_key(subject_id), _revoked_key(subject_id)]
        if record.get("email"):
            keys.append(_email_key(record["email"]))
        self._redis.delete(*keys)

    def set_password(self, subject_id: str, new_password: str) -> None:
        if not self._redis.exists(_subject_key(subject_id)):
            raise NotFoundError("identity not found")
        self._redis.hset(_subject_key(subject_id), "password_hash", hash_password(new_password))

    def lookup_subject_id_by_email(self, email: str) -> str | None:
        subject_id = self._redis.get(_email_key(email))
        return str(subject_id) if subject_id else None
