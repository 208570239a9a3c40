from __future__ import annotations

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.domain.errors import ConflictError, ForbiddenOperationError, NotFoundError
from app.domain.models import Invitation, Organisation, OrganisationUser, Role, RoleWrite, User, UserRole
from app.domain.permissions import DEFAULT_GROUP_NAME, GROUP_OWNER_ROLE_NAME
from app.infra.db import transaction
from app.services.membership_store import MembershipStore
from app.services.role_store import RoleStore


@pytest.fixture()
def roles() -> RoleStore:
    return RoleStore()


@pytest.fixture()
def store(roles: RoleStore) -> MembershipStore:
    return MembershipStore(roles)


@pytest.fixture()
def group_id(engine: Engine, store: MembershipStore) -> str:
    with transaction(engine) as session:
        for user_id in ("alice", "bob", "carol"):
            session.add(User(id=user_id, name=user_id.title(), email=f"{user_id}@example.com"))
        session.flush()
        group = store.create_group(session, "Acme", "alice")
        store.add_user_to_group(session, "bob", group.id)
    return group.id


def _owner_role_id(engine: Engine, store: MembershipStore, group_id: str) -> str:
    with Session(engine) as session:
        owner = store.owner_role(session, group_id)
    assert owner is not None
    return owner.id


def test_create_group_makes_creator_owner(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with Session(engine) as session:
        roles = store.read_member_roles(session, "alice", group_id)
        assert store.is_member(session, "alice", group_id)
        assert [group.name for group in store.list_groups_for_user(session, "alice")] == ["Acme"]
    assert [role.name for role in roles] == [GROUP_OWNER_ROLE_NAME]


def test_add_user_to_group_twice_conflicts(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with pytest.raises(ConflictError):
        with transaction(engine) as session:
            store.add_user_to_group(session, "bob", group_id)


def test_read_member_roles_ignores_non_members(engine: Engine, store: MembershipStore, group_id: str) -> None:
    owner_id = _owner_role_id(engine, store, group_id)
    with transaction(engine) as session:
        # A stale assignment for someone outside the group grants nothing.
        session.add(UserRole(user_id="carol", role_id=owner_id))
    with Session(engine) as session:
        assert store.read_member_roles(session, "carol", group_id) == []
        assert store.read_member_roles(session, "bob", group_id) == []


def test_members_with_roles_lists_only_role_holders(
    engine: Engine,
    store: MembershipStore,
    roles: RoleStore,
    group_id: str,
) -> None:
    with Session(engine) as session:
        members = store.get_members_with_roles(session, group_id)
        everyone = store.read_group_members(session, group_id)
    assert [member.user_id for member in members] == ["alice"]
    assert members[0].roles[0].role_name == GROUP_OWNER_ROLE_NAME
    assert {user.id for user in everyone} == {"alice", "bob"}

    auditor = RoleWrite(name="Auditor", view_logs=True)
    with transaction(engine) as session:
        roles.upsert_roles(session, [auditor], group_id)
        store.add_member_role(session, "bob", auditor.id)
    with Session(engine) as session:
        members = store.get_members_with_roles(session, group_id)
    assert {member.user_id for member in members} == {"alice", "bob"}


def test_add_member_role_rejects_duplicates_and_unknown_roles(
    engine: Engine,
    store: MembershipStore,
    group_id: str,
) -> None:
    owner_id = _owner_role_id(engine, store, group_id)
    with pytest.raises(ConflictError):
        with transaction(engine) as session:
            store.add_member_role(session, "alice", owner_id)
    with pytest.raises(NotFoundError):
        with transaction(engine) as session:
            store.add_member_role(session, "bob", "missing-role")


def test_last_group_owner_cannot_be_removed(engine: Engine, store: MembershipStore, group_id: str) -> None:
    owner_id = _owner_role_id(engine, store, group_id)
    with pytest.raises(ForbiddenOperationError):
        with transaction(engine) as session:
            store.remove_member_role(session, "alice", owner_id)

    with transaction(engine) as session:
        store.add_member_role(session, "bob", owner_id)
    with transaction(engine) as session:
        store.remove_member_role(session, "alice", owner_id)
    with Session(engine) as session:
        assert store.read_member_roles(session, "alice", group_id) == []
        assert [role.id for role in store.read_member_roles(session, "bob", group_id)] == [owner_id]
    with pytest.raises(ForbiddenOperationError):
        with transaction(engine) as session:
            store.remove_member_role(session, "bob", owner_id)
    with Session(engine) as session:
        assert [role.id for role in store.read_member_roles(session, "bob", group_id)] == [owner_id]


def test_remove_member_role_not_held(engine: Engine, store: MembershipStore, roles: RoleStore, group_id: str) -> None:
    auditor = RoleWrite(name="Auditor", view_logs=True)
    with transaction(engine) as session:
        roles.upsert_roles(session, [auditor], group_id)
    with pytest.raises(NotFoundError):
        with transaction(engine) as session:
            store.remove_member_role(session, "bob", auditor.id)


def test_removing_last_membership_creates_default_group(
    engine: Engine,
    store: MembershipStore,
    group_id: str,
) -> None:
    with transaction(engine) as session:
        store.remove_user_from_group(session, "bob", group_id)
    with Session(engine) as session:
        groups = store.list_groups_for_user(session, "bob")
        assert [group.name for group in groups] == [DEFAULT_GROUP_NAME]
        assert [role.name for role in store.read_member_roles(session, "bob", groups[0].id)] == [
            GROUP_OWNER_ROLE_NAME
        ]


def test_sole_member_can_leave_own_group(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with transaction(engine) as session:
        solo = store.create_group(session, "Solo", "carol")
    with transaction(engine) as session:
        store.remove_user_from_group(session, "carol", solo.id)
    with Session(engine) as session:
        groups = store.list_groups_for_user(session, "carol")
        assert store.count_memberships(session, "carol") == 1
        assert [group.name for group in groups] == [DEFAULT_GROUP_NAME]
        assert groups[0].id != solo.id


def test_remove_user_guards_last_owner_and_unknown_membership(
    engine: Engine,
    store: MembershipStore,
    group_id: str,
) -> None:
    with pytest.raises(ForbiddenOperationError):
        with transaction(engine) as session:
            store.remove_user_from_group(session, "alice", group_id)
    with pytest.raises(NotFoundError):
        with transaction(engine) as session:
            store.remove_user_from_group(session, "carol", group_id)
    with Session(engine) as session:
        assert store.is_member(session, "alice", group_id)


def test_delete_group_cascade(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with transaction(engine) as session:
        store.create_invitation(session, group_id, "alice", "dave@example.com")
    with transaction(engine) as session:
        store.delete_group_cascade(session, group_id, "alice")

    with Session(engine) as session:
        assert session.get(Organisation, group_id) is None
        assert session.exec(select(Role).where(Role.group_id == group_id)).all() == []
        assert session.exec(select(OrganisationUser).where(OrganisationUser.organisation_id == group_id)).all() == []
        assert session.exec(select(Invitation)).all() == []
        assert [group.name for group in store.list_groups_for_user(session, "alice")] == [DEFAULT_GROUP_NAME]
        # Bob did not request the deletion and is left without a group.
        assert store.count_memberships(session, "bob") == 0


def test_delete_unknown_group(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with pytest.raises(NotFoundError):
        with transaction(engine) as session:
            store.delete_group_cascade(session, "missing", "alice")


def test_failed_transaction_leaves_no_trace(engine: Engine, store: MembershipStore, group_id: str) -> None:
    with pytest.raises(RuntimeError):
        with transaction(engine) as session:
            store.create_group(session, "Half made", "carol")
            raise RuntimeError("boom")
    with Session(engine) as session:
        assert store.count_memberships(session, "carol") == 0
