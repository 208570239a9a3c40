from __future__ import annotations

import logging
from urllib.parse import urlencode

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.domain.errors import AuthenticationError, ConflictError, ForbiddenOperationError, NotFoundError
from app.domain.models import (
    EmailPasswordSignupRequest,
    InvitationSignupRequest,
    LoginRequest,
    PasswordResetRequest,
    ProviderSignupRequest,
    User,
    now_utc,
)
from app.domain.permissions import DEFAULT_GROUP_NAME
from app.infra.auth import create_action_token, decode_action_token, hash_password, verify_password
from app.infra.db import storage_errors, transaction
from app.infra.identity import IdentityProvider
from app.infra.mailer import Mailer, render_password_reset, render_signup_verification
from app.services.group_service import DOMAIN, PORTAL_DOMAIN, GroupService, find_user_by_email
from app.services.membership_store import MembershipStore

logger = logging.getLogger(__name__)

VERIFY_PURPOSE = "verify-signup"
RESET_PURPOSE = "password-reset"


def _display_name(name: str | None, email: str) -> str:
    return name or email.split("@", 1)[0]


class UserService:
    def __init__(
        self,
        engine: Engine,
        memberships: MembershipStore,
        groups: GroupService,
        identity: IdentityProvider,
        mailer: Mailer,
    ) -> None:
        self._engine = engine
        self._memberships = memberships
        self._groups = groups
        self._identity = identity
        self._mailer = mailer

    def _insert_user(self, session: Session, user: User) -> User:
        if find_user_by_email(session, user.email) is not None:
            raise ConflictError("user already exists")
        with storage_errors("create user"):
            if session.get(User, user.id) is not None:
                raise ConflictError("user already exists")
            session.add(user)
            session.flush()
        return user

    def user_exists(self, user_id: str) -> bool:
        with transaction(self._engine) as session:
            with storage_errors("read user"):
                return session.get(User, user_id) is not None

    def get_user(self, user_id: str) -> User:
        with transaction(self._engine) as session:
            with storage_errors("read user"):
                user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def read_email(self, user_id: str) -> str:
        return self.get_user(user_id).email

    def signup_federated(self, payload: ProviderSignupRequest) -> User:
        credential = self._identity.verify_credential(payload.token)
        if not credential.valid:
            raise AuthenticationError("invalid token")
        email = str(payload.email).strip().lower()
        # The address must be the one the provider holds for this subject.
        if self._identity.lookup_subject_id_by_email(email) != credential.subject_id:
            raise AuthenticationError("email does not match the credential")
        with transaction(self._engine) as session:
            user = self._insert_user(
                session,
                User(id=credential.subject_id, name=_display_name(payload.name, email), email=email, verified=True),
            )
            self._memberships.create_group(session, DEFAULT_GROUP_NAME, user.id)
        return user

    def signup_email_password(self, payload: EmailPasswordSignupRequest) -> User:
        email = str(payload.email).strip().lower()
        name = _display_name(payload.name, email)
        subject_id = self._identity.create_identity(email, payload.password, name)
        try:
            with transaction(self._engine) as session:
                user = self._insert_user(
                    session,
                    User(id=subject_id, name=name, email=email, password_hash=hash_password(payload.password)),
                )
                self._memberships.create_group(session, DEFAULT_GROUP_NAME, user.id)
        except BaseException:
            self._identity.delete_identity(subject_id)
            raise
        return user

    def signup_with_invitation(self, payload: InvitationSignupRequest) -> User:
        email = group_id = ""
        with transaction(self._engine) as session:
            invitation = self._groups.take_invitation(session, payload.invitation_id)
            if invitation is not None:
                email, group_id = invitation.email, invitation.organisation_id
                if find_user_by_email(session, email) is not None:
                    raise ConflictError("user already exists")
        if invitation is None:
            raise NotFoundError("invitation not found")

        subject_id = self._identity.create_identity(email, payload.password, payload.name)
        try:
            with transaction(self._engine) as session:
                # The invitation link proves ownership of the address.
                user = self._insert_user(
                    session,
                    User(
                        id=subject_id,
                        name=payload.name,
                        email=email,
                        password_hash=hash_password(payload.password),
                        verified=True,
                    ),
                )
                self._memberships.add_user_to_group(session, user.id, group_id)
                live = self._memberships.get_invitation(session, payload.invitation_id)
                if live is None:
                    raise NotFoundError("invitation not found")
                self._memberships.delete_invitation(session, live)
        except BaseException:
            self._identity.delete_identity(subject_id)
            raise
        return user

    def send_verification(self, user: User) -> None:
        token = create_action_token(subject_id=user.id, purpose=VERIFY_PURPOSE)
        link = f"{DOMAIN}/api/user/signup/verify?{urlencode({'token': token})}"
        try:
            self._mailer.send([user.email], render_signup_verification(self._mailer.sender, user.email, link=link))
        except Exception:
            logger.exception("error sending verification mail to %s", user.email)

    def verify_signup(self, token: str) -> str:
        subject_id = decode_action_token(token, VERIFY_PURPOSE)
        with transaction(self._engine) as session:
            with storage_errors("verify user"):
                user = session.get(User, subject_id)
                if user is None:
                    raise NotFoundError("user not found")
                user.verified = True
                session.add(user)
                session.flush()
        return f"{PORTAL_DOMAIN}/verified"

    def login(self, payload: LoginRequest) -> str:
        with transaction(self._engine) as session:
            user = find_user_by_email(session, str(payload.email))
            if user is None or not verify_password(payload.password, user.password_hash):
                raise AuthenticationError("invalid email or password")
            if not user.verified:
                raise AuthenticationError("account is not verified")
            with storage_errors("update last login"):
                user.last_login = now_utc()
                session.add(user)
                session.flush()
            subject_id = user.id
        return self._identity.issue_token(subject_id)

    def start_password_reset(self, email: str) -> None:
        with transaction(self._engine) as session:
            user = find_user_by_email(session, email)
        if user is None:
            # Unknown addresses get the same response as known ones.
            logger.info("password reset requested for unknown address")
            return
        token = create_action_token(subject_id=user.id, purpose=RESET_PURPOSE)
        link = f"{PORTAL_DOMAIN}/reset-password?{urlencode({'token': token})}"
        self._mailer.send([user.email], render_password_reset(self._mailer.sender, user.email, link=link))

    def reset_password(self, payload: PasswordResetRequest) -> None:
        subject_id = decode_action_token(payload.token, RESET_PURPOSE)
        with transaction(self._engine) as session:
            with storage_errors("reset password"):
                user = session.get(User, subject_id)
                if user is None:
                    raise NotFoundError("user not found")
                user.password_hash = hash_password(payload.new_password)
                session.add(user)
                session.flush()
            self._identity.set_password(subject_id, payload.new_password)
        self._identity.revoke_sessions(subject_id)

    def delete_user(self, user_id: str) -> None:
        with transaction(self._engine) as session:
            for group in self._memberships.list_groups_for_user(session, user_id):
                if self._memberships.count_members(session, group.id) <= 1:
                    self._memberships.delete_group_cascade(session, group.id, None)
                    continue
                try:
                    self._memberships.remove_user_from_group(session, user_id, group.id, ensure_default=False)
                except ForbiddenOperationError as exc:
                    raise ForbiddenOperationError(
                        f"hand over the Group Owner role in {group.name} before deleting the account"
                    ) from exc
            self._memberships.purge_user(session, user_id)
        self._identity.delete_identity(user_id)
        logger.info("user %s deleted", user_id)
