from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlmodel import Session, col, func, select

from app.domain.errors import ConflictError, ForbiddenOperationError, NotFoundError
from app.domain.models import (
    Invitation,
    MemberRoleRef,
    MemberWithRoles,
    Organisation,
    OrganisationUser,
    Role,
    User,
    UserRole,
)
from app.domain.permissions import DEFAULT_GROUP_NAME, GROUP_OWNER_ROLE_NAME
from app.infra.db import storage_errors
from app.services.role_store import RoleStore

logger = logging.getLogger(__name__)


class MembershipStore:
    """Users <-> groups and users <-> roles.

    Every method runs inside the caller's session and never commits, so a
    multi-step mutation and its compensating "default group" insert land in
    one transaction.
    """

    def __init__(self, role_store: RoleStore) -> None:
        self._roles = role_store

    def create_group(self, session: Session, name: str, user_id: str) -> Organisation:
        group = Organisation(name=name)
        with storage_errors("create group"):
            session.add(group)
            session.flush()
            session.add(OrganisationUser(organisation_id=group.id, user_id=user_id))
            session.flush()
        self._roles.create_group_owner_role(session, group.id, user_id)
        return group

    def get_group(self, session: Session, group_id: str) -> Organisation | None:
        with storage_errors("read group"):
            return session.get(Organisation, group_id)

    def add_user_to_group(self, session: Session, user_id: str, group_id: str) -> None:
        with storage_errors("add user to group"):
            if session.get(OrganisationUser, (group_id, user_id)) is not None:
                raise ConflictError("user is already a member of the group")
            session.add(OrganisationUser(organisation_id=group_id, user_id=user_id))
            session.flush()

    def is_member(self, session: Session, user_id: str, group_id: str) -> bool:
        with storage_errors("read membership"):
            return session.get(OrganisationUser, (group_id, user_id)) is not None

    def count_memberships(self, session: Session, user_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(OrganisationUser)
            .where(OrganisationUser.user_id == user_id)
        )
        with storage_errors("count memberships"):
            return int(session.exec(statement).one())

    def list_groups_for_user(self, session: Session, user_id: str) -> list[Organisation]:
        statement = (
            select(Organisation)
            .join(OrganisationUser, col(OrganisationUser.organisation_id) == col(Organisation.id))
            .where(OrganisationUser.user_id == user_id)
            .order_by(col(Organisation.created_at))
        )
        with storage_errors("list groups"):
            return list(session.exec(statement).all())

    def read_group_members(self, session: Session, group_id: str) -> list[User]:
        statement = (
            select(User)
            .join(OrganisationUser, col(OrganisationUser.user_id) == col(User.id))
            .where(OrganisationUser.organisation_id == group_id)
            .order_by(col(User.name))
        )
        with storage_errors("read group members"):
            return list(session.exec(statement).all())

    def add_member_role(self, session: Session, user_id: str, role_id: str) -> None:
        with storage_errors("add member role"):
            if session.get(Role, role_id) is None:
                raise NotFoundError("role not found")
            if session.get(UserRole, (user_id, role_id)) is not None:
                raise ConflictError("user already holds the role")
            session.add(UserRole(user_id=user_id, role_id=role_id))
            session.flush()

    def remove_member_role(self, session: Session, user_id: str, role_id: str) -> None:
        with storage_errors("remove member role"):
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.name == GROUP_OWNER_ROLE_NAME:
                holders = self._lock_holders(session, role_id)
                if len(holders) <= 1:
                    raise ForbiddenOperationError("cannot remove the last Group Owner role from the group")
            result = session.execute(
                sa.delete(UserRole)
                .where(col(UserRole.user_id) == user_id)
                .where(col(UserRole.role_id) == role_id)
            )
            if not getattr(result, "rowcount", 0):
                raise NotFoundError("role assignment not found")

    def read_member_roles(self, session: Session, user_id: str, group_id: str) -> list[Role]:
        statement = (
            select(Role)
            .join(UserRole, col(UserRole.role_id) == col(Role.id))
            .join(
                OrganisationUser,
                sa.and_(
                    col(OrganisationUser.organisation_id) == col(Role.group_id),
                    col(OrganisationUser.user_id) == col(UserRole.user_id),
                ),
            )
            .where(UserRole.user_id == user_id)
            .where(Role.group_id == group_id)
        )
        with storage_errors("read member roles"):
            return list(session.exec(statement).all())

    def get_members_with_roles(self, session: Session, group_id: str) -> list[MemberWithRoles]:
        # Inner join: members holding no role in the group are not listed.
        statement = (
            select(User.id, User.name, Role.id, Role.name)
            .select_from(OrganisationUser)
            .join(User, col(User.id) == col(OrganisationUser.user_id))
            .join(UserRole, col(UserRole.user_id) == col(OrganisationUser.user_id))
            .join(
                Role,
                sa.and_(
                    col(Role.id) == col(UserRole.role_id),
                    col(Role.group_id) == col(OrganisationUser.organisation_id),
                ),
            )
            .where(OrganisationUser.organisation_id == group_id)
            .order_by(col(User.name), col(Role.name))
        )
        with storage_errors("read members with roles"):
            rows = session.exec(statement).all()
        members: dict[str, MemberWithRoles] = {}
        for member_id, member_name, role_id, role_name in rows:
            member = members.setdefault(member_id, MemberWithRoles(user_id=member_id, user_name=member_name))
            member.roles.append(MemberRoleRef(role_id=role_id, role_name=role_name))
        return list(members.values())

    def owner_role(self, session: Session, group_id: str) -> Role | None:
        statement = select(Role).where(Role.group_id == group_id).where(Role.name == GROUP_OWNER_ROLE_NAME)
        with storage_errors("read owner role"):
            return session.exec(statement).first()

    def _lock_holders(self, session: Session, role_id: str) -> list[str]:
        # Row locks keep two concurrent removals from both seeing two holders.
        statement = select(UserRole.user_id).where(UserRole.role_id == role_id).with_for_update()
        return list(session.exec(statement).all())

    def remove_user_from_group(
        self,
        session: Session,
        user_id: str,
        group_id: str,
        *,
        ensure_default: bool = True,
    ) -> None:
        with storage_errors("remove user from group"):
            owner = self.owner_role(session, group_id)
            # A sole remaining member may always leave; otherwise someone else must keep the owner role.
            if owner is not None and self.count_members(session, group_id) > 1:
                holders = self._lock_holders(session, owner.id)
                if user_id in holders and len(holders) <= 1:
                    raise ForbiddenOperationError("cannot remove the last Group Owner from the group")
            role_ids = select(Role.id).where(Role.group_id == group_id)
            session.execute(
                sa.delete(UserRole)
                .where(col(UserRole.user_id) == user_id)
                .where(col(UserRole.role_id).in_(role_ids))
            )
            result = session.execute(
                sa.delete(OrganisationUser)
                .where(col(OrganisationUser.user_id) == user_id)
                .where(col(OrganisationUser.organisation_id) == group_id)
            )
            if not getattr(result, "rowcount", 0):
                raise NotFoundError("membership not found")
        if ensure_default:
            self._ensure_default_group(session, user_id)

    def delete_group_cascade(self, session: Session, group_id: str, requesting_user_id: str | None) -> None:
        with storage_errors("delete group"):
            group = session.get(Organisation, group_id)
            if group is None:
                raise NotFoundError("group not found")
            role_ids = select(Role.id).where(Role.group_id == group_id)
            session.execute(sa.delete(UserRole).where(col(UserRole.role_id).in_(role_ids)))
            session.execute(sa.delete(Role).where(col(Role.group_id) == group_id))
            session.execute(sa.delete(OrganisationUser).where(col(OrganisationUser.organisation_id) == group_id))
            session.execute(sa.delete(Invitation).where(col(Invitation.organisation_id) == group_id))
            session.delete(group)
            session.flush()
        if requesting_user_id is not None:
            self._ensure_default_group(session, requesting_user_id)

    def _ensure_default_group(self, session: Session, user_id: str) -> None:
        if self.count_memberships(session, user_id) > 0:
            return
        with storage_errors("read user"):
            if session.get(User, user_id) is None:
                return
        group = self.create_group(session, DEFAULT_GROUP_NAME, user_id)
        logger.info("created default group %s for user %s", group.id, user_id)

    def count_members(self, session: Session, group_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(OrganisationUser)
            .where(OrganisationUser.organisation_id == group_id)
        )
        with storage_errors("count members"):
            return int(session.exec(statement).one())

    def create_invitation(self, session: Session, group_id: str, inviter_id: str, email: str) -> Invitation:
        invitation = Invitation(organisation_id=group_id, inviter_id=inviter_id, email=email)
        with storage_errors("create invitation"):
            session.add(invitation)
            session.flush()
        return invitation

    def get_invitation(self, session: Session, invitation_id: str) -> Invitation | None:
        with storage_errors("read invitation"):
            return session.get(Invitation, invitation_id)

    def delete_invitation(self, session: Session, invitation: Invitation) -> None:
        with storage_errors("delete invitation"):
            session.delete(invitation)
            session.flush()

    def purge_user(self, session: Session, user_id: str) -> None:
        """Drop every row tied to ``user_id``; invitations they sent keep a null inviter."""
        with storage_errors("delete user"):
            session.execute(sa.delete(UserRole).where(col(UserRole.user_id) == user_id))
            session.execute(sa.delete(OrganisationUser).where(col(OrganisationUser.user_id) == user_id))
            session.execute(
                sa.update(Invitation).where(col(Invitation.inviter_id) == user_id).values(inviter_id=None)
            )
            user = session.get(User, user_id)
            if user is not None:
                session.delete(user)
            session.flush()
