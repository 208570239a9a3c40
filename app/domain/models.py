from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic import Field as PydanticField
from sqlalchemy import Column, ForeignKey, Index, String, text
from sqlmodel import Field, SQLModel

from app.domain.permissions import GROUP_OWNER_ROLE_NAME


def now_utc() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class User(SQLModel, table=True):
    __tablename__ = "user"

    # Subject id issued by the identity provider.
    id: str = Field(primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: str | None = None
    verified: bool = Field(default=False)
    last_login: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Organisation(SQLModel, table=True):
    __tablename__ = "organisation"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class OrganisationUser(SQLModel, table=True):
    __tablename__ = "organisation_user"
    __table_args__ = (Index("ix_organisation_user_user", "user_id"),)

    organisation_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("organisation.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    user_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("user.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    created_at: datetime = Field(default_factory=now_utc)


class Role(SQLModel, table=True):
    __tablename__ = "role"
    __table_args__ = (
        Index(
            "uq_role_group_owner",
            "group_id",
            unique=True,
            postgresql_where=text(f"name = '{GROUP_OWNER_ROLE_NAME}'"),
            sqlite_where=text(f"name = '{GROUP_OWNER_ROLE_NAME}'"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    group_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("organisation.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    name: str

    rename_group: bool = False
    delete_group: bool = False

    invite_member: bool = False
    remove_member: bool = False

    create_resource: bool = False
    update_resource_metadata: bool = False
    delete_resource: bool = False
    export_resource: bool = False

    view_logs: bool = False
    export_logs: bool = False

    created_at: datetime = Field(default_factory=now_utc)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_role"
    __table_args__ = (Index("ix_user_role_role", "role_id"),)

    user_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("user.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    role_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("role.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    created_at: datetime = Field(default_factory=now_utc)


class Invitation(SQLModel, table=True):
    __tablename__ = "invitation"

    id: str = Field(default_factory=new_id, primary_key=True)
    inviter_id: str | None = Field(
        default=None,
        sa_column=Column(String, ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
    )
    email: str = Field(index=True)
    organisation_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("organisation.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    created_at: datetime = Field(default_factory=now_utc)


class AuditLog(SQLModel, table=True):
    __tablename__ = "log"

    id: str = Field(default_factory=new_id, primary_key=True)
    # No foreign key: entries outlive the group they describe.
    group_id: str = Field(index=True)
    action: str
    status: str
    user_id: str
    email: str
    timestamp: datetime = Field(default_factory=now_utc, index=True)


class AuditEntry(BaseModel):
    group_id: str
    action: str
    status: str
    user_id: str
    email: str
    timestamp: datetime = PydanticField(default_factory=now_utc)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CapabilityFlags(BaseModel):
    rename_group: bool = False
    delete_group: bool = False
    invite_member: bool = False
    remove_member: bool = False
    create_resource: bool = False
    update_resource_metadata: bool = False
    delete_resource: bool = False
    export_resource: bool = False
    view_logs: bool = False
    export_logs: bool = False


class RoleWrite(CapabilityFlags):
    id: str = PydanticField(default_factory=new_id)
    name: str = PydanticField(min_length=1)


class RoleRead(CapabilityFlags, ORMReadModel):
    id: str
    group_id: str
    name: str
    created_at: datetime


class GroupCreate(BaseModel):
    name: str = PydanticField(min_length=1)


class GroupUpdate(BaseModel):
    name: str | None = None


class GroupRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class MemberRead(ORMReadModel):
    id: str
    name: str
    email: str


class MemberRoleRef(BaseModel):
    role_id: str
    role_name: str


class MemberWithRoles(BaseModel):
    user_id: str
    user_name: str
    roles: list[MemberRoleRef] = PydanticField(default_factory=list)


class InvitationCreate(BaseModel):
    email: EmailStr
    name: str | None = None


class InvitationRead(ORMReadModel):
    id: str
    inviter_id: str | None = None
    email: str
    organisation_id: str
    created_at: datetime


class UserRead(ORMReadModel):
    id: str
    name: str
    email: str
    verified: bool
    last_login: datetime | None = None
    created_at: datetime


class ProviderSignupRequest(BaseModel):
    token: str
    email: EmailStr
    name: str | None = None


class EmailPasswordSignupRequest(BaseModel):
    email: EmailStr
    password: str = PydanticField(min_length=8)
    name: str | None = None


class InvitationSignupRequest(BaseModel):
    invitation_id: str
    password: str = PydanticField(min_length=8)
    name: str = PydanticField(min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PasswordResetStartRequest(BaseModel):
    email: EmailStr


class PasswordResetRequest(BaseModel):
    token: str
    new_password: str = PydanticField(min_length=8)


class TokenVerifyRequest(BaseModel):
    token: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AuditEntryRead(ORMReadModel):
    group_id: str
    action: str
    status: str
    email: str
    timestamp: datetime


class InternalCheckRequest(BaseModel):
    token: str
    method: str
    path: str
    group_id: str | None = None


class InternalCheckRead(BaseModel):
    subject_id: str
    capability: str | None = None
    allowed: bool
