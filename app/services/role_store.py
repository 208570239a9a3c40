from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from sqlmodel import Session, col, select

from app.domain.errors import ForbiddenOperationError, NotFoundError
from app.domain.models import CapabilityFlags, Role, RoleWrite, UserRole
from app.domain.permissions import GROUP_OWNER_ROLE_NAME, Capability
from app.infra.db import storage_errors


def _copy_flags(source: CapabilityFlags | Role, target: Role) -> None:
    for capability in Capability:
        setattr(target, capability.field_name, bool(getattr(source, capability.field_name)))


class RoleStore:
    """Roles scoped to a group. Every method runs inside the caller's session and never commits."""

    def get_role(self, session: Session, role_id: str) -> Role | None:
        with storage_errors("read role"):
            return session.get(Role, role_id)

    def read_roles(self, session: Session, group_id: str) -> list[Role]:
        statement = select(Role).where(Role.group_id == group_id).order_by(col(Role.created_at))
        with storage_errors("read roles"):
            return list(session.exec(statement).all())

    def upsert_roles(self, session: Session, roles: Sequence[RoleWrite], group_id: str) -> None:
        # Processed in order so a repeated id resolves to its last occurrence.
        with storage_errors("upsert roles"):
            for payload in roles:
                if payload.name == GROUP_OWNER_ROLE_NAME:
                    continue
                existing = session.get(Role, payload.id)
                if existing is None:
                    role = Role(id=payload.id, group_id=group_id, name=payload.name)
                    _copy_flags(payload, role)
                    session.add(role)
                    session.flush()
                    continue
                if existing.group_id != group_id:
                    raise NotFoundError("role not found in group")
                if existing.name == GROUP_OWNER_ROLE_NAME:
                    continue
                existing.name = payload.name
                _copy_flags(payload, existing)
                session.add(existing)
                session.flush()

    def delete_role(self, session: Session, role_id: str) -> None:
        with storage_errors("delete role"):
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.name == GROUP_OWNER_ROLE_NAME:
                raise ForbiddenOperationError("the Group Owner role cannot be deleted")
            session.execute(sa.delete(UserRole).where(col(UserRole.role_id) == role_id))
            session.delete(role)
            session.flush()

    def create_group_owner_role(self, session: Session, group_id: str, user_id: str) -> Role:
        role = Role(group_id=group_id, name=GROUP_OWNER_ROLE_NAME)
        for capability in Capability:
            setattr(role, capability.field_name, True)
        with storage_errors("create group owner role"):
            session.add(role)
            session.flush()
            session.add(UserRole(user_id=user_id, role_id=role.id))
            session.flush()
        return role
