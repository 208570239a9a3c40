from __future__ import annotations

from collections.abc import Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from app.api.deps import Services
from app.domain.errors import ConflictError, NotFoundError
from app.domain.models import ProviderSignupRequest
from app.infra.audit import AuditLogSink
from app.infra.auth import InternalTokenService
from app.infra.cache import UserEmailCache
from app.infra.identity import VerifiedCredential
from app.main import create_app
from app.services.group_service import GroupService
from app.services.membership_store import MembershipStore
from app.services.role_store import RoleStore
from app.services.user_service import UserService

INTERNAL_SECRET = "test-internal-secret-0123456789abcdef"


class InMemoryIdentityProvider:
    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}
        self.identities: dict[str, dict[str, str]] = {}
        self.revoked: list[str] = []

    def issue_token(self, subject_id: str) -> str:
        token = f"token-{uuid4().hex}"
        self.tokens[token] = subject_id
        return token

    def verify_credential(self, token: str) -> VerifiedCredential:
        subject_id = self.tokens.get(token)
        if subject_id is None:
            return VerifiedCredential(subject_id="", valid=False)
        return VerifiedCredential(subject_id=subject_id, valid=True)

    def revoke_sessions(self, subject_id: str) -> None:
        self.revoked.append(subject_id)
        self.tokens = {token: sid for token, sid in self.tokens.items() if sid != subject_id}

    def create_identity(self, email: str, password: str, display_name: str) -> str:
        if self.lookup_subject_id_by_email(email) is not None:
            raise ConflictError("identity already exists for email")
        subject_id = uuid4().hex
        self.identities[subject_id] = {"email": email, "password": password, "display_name": display_name}
        return subject_id

    def delete_identity(self, subject_id: str) -> None:
        self.identities.pop(subject_id, None)

    def set_password(self, subject_id: str, new_password: str) -> None:
        if subject_id not in self.identities:
            raise NotFoundError("identity not found")
        self.identities[subject_id]["password"] = new_password

    def lookup_subject_id_by_email(self, email: str) -> str | None:
        for subject_id, record in self.identities.items():
            if record["email"] == email:
                return subject_id
        return None


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[list[str], str]] = []
        self.fail = False

    @property
    def sender(self) -> str:
        return "noreply@example.com"

    def send(self, recipients: list[str], message: str) -> None:
        if self.fail:
            raise OSError("smtp unavailable")
        self.sent.append((recipients, message))

    def recipients(self) -> list[str]:
        return [address for recipients, _ in self.sent for address in recipients]


@dataclass
class Account:
    id: str
    email: str
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "access_control_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def identity() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def internal_tokens() -> InternalTokenService:
    return InternalTokenService(INTERNAL_SECRET)


@pytest.fixture()
def services(
    engine: Engine,
    identity: InMemoryIdentityProvider,
    mailer: RecordingMailer,
    internal_tokens: InternalTokenService,
) -> Services:
    roles = RoleStore()
    memberships = MembershipStore(roles)
    groups = GroupService(engine, roles, memberships, mailer)
    users = UserService(engine, memberships, groups, identity, mailer)
    return Services(
        engine=engine,
        roles=roles,
        memberships=memberships,
        groups=groups,
        users=users,
        audit=AuditLogSink(engine, workers=1),
        email_cache=UserEmailCache(users.read_email, flush_interval=3600),
        identity=identity,
        mailer=mailer,
        internal_tokens=internal_tokens,
    )


@pytest.fixture()
def client(services: Services) -> Generator[TestClient, None, None]:
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture()
def make_account(services: Services, identity: InMemoryIdentityProvider) -> Callable[..., Account]:
    def _make(email: str, name: str | None = None) -> Account:
        subject_id = identity.create_identity(email, "provider-password", name or email)
        token = identity.issue_token(subject_id)
        services.users.signup_federated(ProviderSignupRequest(token=token, email=email, name=name))
        return Account(id=subject_id, email=email, token=token)

    return _make
