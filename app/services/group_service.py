from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.domain.errors import ConflictError, InputValidationError, NotFoundError
from app.domain.models import (
    GroupCreate,
    GroupUpdate,
    Invitation,
    InvitationCreate,
    MemberWithRoles,
    Organisation,
    Role,
    RoleWrite,
    User,
    now_utc,
)
from app.infra.db import storage_errors, transaction
from app.infra.mailer import Mailer, render_invitation, render_removed_from_group
from app.services.membership_store import MembershipStore
from app.services.role_store import RoleStore

logger = logging.getLogger(__name__)

DOMAIN = os.getenv("DOMAIN", "http://localhost:8000")
PORTAL_DOMAIN = os.getenv("PORTAL_DOMAIN", "http://localhost:3000")
INVITATION_TTL_HOURS = int(os.getenv("INVITATION_TTL_HOURS", "168"))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def invitation_expired(invitation: Invitation, *, ttl_hours: int = INVITATION_TTL_HOURS) -> bool:
    return now_utc() - _as_utc(invitation.created_at) > timedelta(hours=ttl_hours)


def invitation_link(action: str, invitation_id: str) -> str:
    return f"{DOMAIN}/api/group/{action}?{urlencode({'invitation_id': invitation_id})}"


def find_user_by_email(session: Session, email: str) -> User | None:
    with storage_errors("read user"):
        return session.exec(select(User).where(User.email == email.strip().lower())).first()


class GroupService:
    def __init__(
        self,
        engine: Engine,
        roles: RoleStore,
        memberships: MembershipStore,
        mailer: Mailer,
    ) -> None:
        self._engine = engine
        self._roles = roles
        self._memberships = memberships
        self._mailer = mailer

    def _member_group(self, session: Session, user_id: str, group_id: str) -> Organisation:
        group = self._memberships.get_group(session, group_id)
        if group is None or not self._memberships.is_member(session, user_id, group_id):
            raise NotFoundError("group not found")
        return group

    def _require_group(self, session: Session, group_id: str) -> Organisation:
        group = self._memberships.get_group(session, group_id)
        if group is None:
            raise NotFoundError("group not found")
        return group

    def _require_group_role(self, session: Session, group_id: str, role_id: str) -> Role:
        role = self._roles.get_role(session, role_id)
        if role is None or role.group_id != group_id:
            raise NotFoundError("role not found")
        return role

    def create_group(self, user_id: str, payload: GroupCreate) -> Organisation:
        with transaction(self._engine) as session:
            return self._memberships.create_group(session, payload.name, user_id)

    def list_groups(self, user_id: str) -> list[Organisation]:
        with transaction(self._engine) as session:
            return self._memberships.list_groups_for_user(session, user_id)

    def get_group(self, user_id: str, group_id: str) -> Organisation:
        with transaction(self._engine) as session:
            return self._member_group(session, user_id, group_id)

    def rename_group(self, group_id: str, payload: GroupUpdate) -> Organisation:
        with transaction(self._engine) as session:
            group = self._require_group(session, group_id)
            if payload.name is not None and not payload.name.strip():
                raise InputValidationError("group name must not be blank", {"name": "blank"})
            if payload.name:
                group.name = payload.name
                with storage_errors("rename group"):
                    session.add(group)
                    session.flush()
            return group

    def delete_group(self, group_id: str, user_id: str) -> None:
        with transaction(self._engine) as session:
            self._memberships.delete_group_cascade(session, group_id, user_id)
        logger.info("group %s deleted by %s", group_id, user_id)

    def list_members(self, user_id: str, group_id: str) -> list[User]:
        with transaction(self._engine) as session:
            self._member_group(session, user_id, group_id)
            return self._memberships.read_group_members(session, group_id)

    def members_with_roles(self, user_id: str, group_id: str) -> list[MemberWithRoles]:
        with transaction(self._engine) as session:
            self._member_group(session, user_id, group_id)
            return self._memberships.get_members_with_roles(session, group_id)

    def list_roles(self, user_id: str, group_id: str) -> list[Role]:
        with transaction(self._engine) as session:
            self._member_group(session, user_id, group_id)
            return self._roles.read_roles(session, group_id)

    def upsert_roles(self, group_id: str, roles: Sequence[RoleWrite]) -> list[Role]:
        with transaction(self._engine) as session:
            self._require_group(session, group_id)
            self._roles.upsert_roles(session, roles, group_id)
            return self._roles.read_roles(session, group_id)

    def delete_role(self, group_id: str, role_id: str) -> None:
        with transaction(self._engine) as session:
            self._require_group_role(session, group_id, role_id)
            self._roles.delete_role(session, role_id)

    def assign_role(self, group_id: str, role_id: str, user_id: str) -> None:
        with transaction(self._engine) as session:
            self._require_group_role(session, group_id, role_id)
            if not self._memberships.is_member(session, user_id, group_id):
                raise NotFoundError("member not found")
            self._memberships.add_member_role(session, user_id, role_id)

    def unassign_role(self, group_id: str, role_id: str, user_id: str) -> None:
        with transaction(self._engine) as session:
            self._require_group_role(session, group_id, role_id)
            self._memberships.remove_member_role(session, user_id, role_id)

    def remove_member(self, group_id: str, user_id: str) -> None:
        with transaction(self._engine) as session:
            group = self._require_group(session, group_id)
            member = session.get(User, user_id)
            self._memberships.remove_user_from_group(session, user_id, group_id)
            group_name = group.name
            email = member.email if member is not None else None
        if email:
            self._notify(
                email,
                render_removed_from_group(self._mailer.sender, email, group_name=group_name),
            )

    def leave_group(self, user_id: str, group_id: str) -> None:
        with transaction(self._engine) as session:
            self._member_group(session, user_id, group_id)
            self._memberships.remove_user_from_group(session, user_id, group_id)

    def invite(self, group_id: str, inviter_id: str, payload: InvitationCreate) -> Invitation:
        email = str(payload.email).strip().lower()
        with transaction(self._engine) as session:
            group = self._require_group(session, group_id)
            invitee = find_user_by_email(session, email)
            if invitee is not None and self._memberships.is_member(session, invitee.id, group_id):
                raise ConflictError("user is already a member of the group")
            invitation = self._memberships.create_invitation(session, group_id, inviter_id, email)
            message = render_invitation(
                self._mailer.sender,
                email,
                group_name=group.name,
                join_link=invitation_link("join", invitation.id),
                reject_link=invitation_link("reject", invitation.id),
                invitee_name=payload.name or (invitee.name if invitee is not None else None),
            )
            # Sent before commit: an undeliverable invitation is not stored.
            self._mailer.send([email], message)
        return invitation

    def take_invitation(self, session: Session, invitation_id: str) -> Invitation | None:
        """Return the live invitation, deleting it first when it has expired."""
        invitation = self._memberships.get_invitation(session, invitation_id)
        if invitation is None:
            return None
        if invitation_expired(invitation):
            self._memberships.delete_invitation(session, invitation)
            logger.info("invitation %s expired", invitation_id)
            return None
        return invitation

    def accept_invitation(self, invitation_id: str) -> str:
        invitee: User | None = None
        with transaction(self._engine) as session:
            invitation = self.take_invitation(session, invitation_id)
            if invitation is not None:
                invitee = find_user_by_email(session, invitation.email)
                # Unverified accounts have not proven they own the invited address.
                if invitee is not None and not invitee.verified:
                    invitee = None
                if invitee is not None:
                    try:
                        self._memberships.add_user_to_group(session, invitee.id, invitation.organisation_id)
                    except ConflictError:
                        logger.info("invitee %s already joined %s", invitee.id, invitation.organisation_id)
                    self._memberships.delete_invitation(session, invitation)
        if invitation is None:
            raise NotFoundError("invitation not found")
        if invitee is None:
            raise NotFoundError("no verified account exists for the invited email")
        return f"{PORTAL_DOMAIN}/invited"

    def reject_invitation(self, invitation_id: str) -> None:
        with transaction(self._engine) as session:
            invitation = self.take_invitation(session, invitation_id)
            if invitation is not None:
                self._memberships.delete_invitation(session, invitation)
        if invitation is None:
            raise NotFoundError("invitation not found")

    def _notify(self, email: str, message: str) -> None:
        try:
            self._mailer.send([email], message)
        except Exception:
            logger.exception("error sending notification to %s", email)
