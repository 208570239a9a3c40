from __future__ import annotations

from datetime import UTC, datetime

from app.infra.identity import RedisIdentityProvider


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def set(self, key: str, value: object, nx: bool = False) -> bool:
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True


def _provider(fake_redis: FakeRedis) -> RedisIdentityProvider:
    return RedisIdentityProvider(fake_redis, secret="test-identity-secret-0123456789abcdef")  # type: ignore[arg-type]


def test_issued_token_verifies() -> None:
    provider = _provider(FakeRedis())
    credential = provider.verify_credential(provider.issue_token("subject-1"))
    assert credential.valid
    assert credential.subject_id == "subject-1"


def test_revocation_covers_tokens_from_the_same_second() -> None:
    provider = _provider(FakeRedis())
    token = provider.issue_token("subject-1")
    provider.revoke_sessions("subject-1")
    assert not provider.verify_credential(token).valid


def test_tokens_issued_after_revocation_are_valid() -> None:
    fake_redis = FakeRedis()
    provider = _provider(fake_redis)
    earlier_ms = int(datetime.now(UTC).timestamp() * 1000) - 1000
    fake_redis.set("identity:revoked:subject-1", earlier_ms)
    assert provider.verify_credential(provider.issue_token("subject-1")).valid


def test_tampered_token_is_invalid() -> None:
    provider = _provider(FakeRedis())
    other = RedisIdentityProvider(FakeRedis(), secret="another-identity-secret-0123456789abcdef")  # type: ignore[arg-type]
    assert not provider.verify_credential(other.issue_token("subject-1")).valid
