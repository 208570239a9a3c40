from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.api.deps import Services
from app.domain.models import Invitation, now_utc
from app.domain.permissions import DEFAULT_GROUP_NAME, GROUP_OWNER_ROLE_NAME
from app.services.group_service import INVITATION_TTL_HOURS, PORTAL_DOMAIN

if TYPE_CHECKING:
    from tests.conftest import Account, RecordingMailer


@pytest.fixture()
def owner(make_account: Callable[..., Account]) -> Account:
    return make_account("owner@example.com", "Owner")


@pytest.fixture()
def guest(make_account: Callable[..., Account]) -> Account:
    return make_account("guest@example.com", "Guest")


@pytest.fixture()
def group_id(client: TestClient, owner: Account) -> str:
    response = client.post("/api/group/create", json={"name": "Acme"}, headers=owner.headers)
    assert response.status_code == 201
    return response.json()["id"]


def _join(client: TestClient, owner: Account, group_id: str, guest: Account) -> None:
    invite = client.post(
        f"/api/group/{group_id}/member/invite",
        json={"email": guest.email},
        headers=owner.headers,
    )
    assert invite.status_code == 201
    joined = client.get(
        "/api/group/join",
        params={"invitation_id": invite.json()["id"]},
        follow_redirects=False,
    )
    assert joined.status_code == 303


def test_signup_creates_default_group(client: TestClient, owner: Account) -> None:
    response = client.get("/api/group/list", headers=owner.headers)
    assert response.status_code == 200
    assert [group["name"] for group in response.json()] == [DEFAULT_GROUP_NAME]


def test_create_read_and_list_groups(client: TestClient, owner: Account, guest: Account, group_id: str) -> None:
    assert client.get(f"/api/group/{group_id}", headers=owner.headers).json()["name"] == "Acme"
    names = [group["name"] for group in client.get("/api/group/list", headers=owner.headers).json()]
    assert names == [DEFAULT_GROUP_NAME, "Acme"]
    # Outsiders cannot see the group.
    assert client.get(f"/api/group/{group_id}", headers=guest.headers).status_code == 404


def test_invitation_accept_flow(
    client: TestClient,
    mailer: RecordingMailer,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    invite = client.post(
        f"/api/group/{group_id}/member/invite",
        json={"email": guest.email, "name": "Guest"},
        headers=owner.headers,
    )
    assert invite.status_code == 201
    assert mailer.recipients() == [guest.email]

    joined = client.get("/api/group/join", params={"invitation_id": invite.json()["id"]}, follow_redirects=False)
    assert joined.status_code == 303
    assert joined.headers["location"] == f"{PORTAL_DOMAIN}/invited"

    members = client.get(f"/api/group/{group_id}/members", headers=owner.headers).json()
    assert {member["id"] for member in members} == {owner.id, guest.id}
    # The invitation is consumed.
    assert client.get("/api/group/join", params={"invitation_id": invite.json()["id"]}).status_code == 404


def test_inviting_an_existing_member_conflicts(
    client: TestClient,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    _join(client, owner, group_id, guest)
    response = client.post(
        f"/api/group/{group_id}/member/invite",
        json={"email": guest.email},
        headers=owner.headers,
    )
    assert response.status_code == 409


def test_reject_invitation(client: TestClient, services: Services, owner: Account, group_id: str) -> None:
    invite = client.post(
        f"/api/group/{group_id}/member/invite",
        json={"email": "someone@example.com"},
        headers=owner.headers,
    )
    assert client.get("/api/group/reject", params={"invitation_id": invite.json()["id"]}).status_code == 204
    with Session(services.engine) as session:
        assert session.exec(select(Invitation)).all() == []


def test_expired_invitation_is_deleted(
    client: TestClient,
    services: Services,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    invite = client.post(
        f"/api/group/{group_id}/member/invite",
        json={"email": guest.email},
        headers=owner.headers,
    )
    invitation_id = invite.json()["id"]
    with Session(services.engine) as session:
        invitation = session.get(Invitation, invitation_id)
        assert invitation is not None
        invitation.created_at = now_utc() - timedelta(hours=INVITATION_TTL_HOURS + 1)
        session.add(invitation)
        session.commit()

    assert client.get("/api/group/join", params={"invitation_id": invitation_id}).status_code == 404
    with Session(services.engine) as session:
        assert session.get(Invitation, invitation_id) is None


def test_failed_invitation_mail_stores_nothing(
    client: TestClient,
    services: Services,
    mailer: RecordingMailer,
    owner: Account,
    group_id: str,
) -> None:
    mailer.fail = True
    with pytest.raises(OSError):
        client.post(
            f"/api/group/{group_id}/member/invite",
            json={"email": "someone@example.com"},
            headers=owner.headers,
        )
    with Session(services.engine) as session:
        assert session.exec(select(Invitation)).all() == []


def test_roles_upsert_assign_and_use(
    client: TestClient,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    _join(client, owner, group_id, guest)
    assert client.get(f"/api/logs/{group_id}", headers=guest.headers).status_code == 403

    upserted = client.put(
        f"/api/group/{group_id}/roles",
        json=[{"name": "Auditor", "view_logs": True}],
        headers=owner.headers,
    )
    assert upserted.status_code == 200
    auditor = next(role for role in upserted.json() if role["name"] == "Auditor")

    assigned = client.post(f"/api/group/{group_id}/roles/{auditor['id']}/members/{guest.id}", headers=owner.headers)
    assert assigned.status_code == 204
    assert client.get(f"/api/logs/{group_id}", headers=guest.headers).status_code == 200

    duplicate = client.post(f"/api/group/{group_id}/roles/{auditor['id']}/members/{guest.id}", headers=owner.headers)
    assert duplicate.status_code == 409

    members = client.get(f"/api/group/{group_id}/members/roles", headers=owner.headers).json()
    roles_by_user = {member["user_id"]: [role["role_name"] for role in member["roles"]] for member in members}
    assert roles_by_user == {owner.id: [GROUP_OWNER_ROLE_NAME], guest.id: ["Auditor"]}

    removed = client.delete(f"/api/group/{group_id}/roles/{auditor['id']}/members/{guest.id}", headers=owner.headers)
    assert removed.status_code == 204
    assert client.get(f"/api/logs/{group_id}", headers=guest.headers).status_code == 403


def test_owner_role_cannot_be_deleted_or_orphaned(
    client: TestClient,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    _join(client, owner, group_id, guest)
    roles = client.get(f"/api/group/{group_id}/roles", headers=owner.headers).json()
    owner_role = next(role for role in roles if role["name"] == GROUP_OWNER_ROLE_NAME)

    assert client.delete(f"/api/group/{group_id}/roles/{owner_role['id']}", headers=owner.headers).status_code == 403
    response = client.delete(
        f"/api/group/{group_id}/roles/{owner_role['id']}/members/{owner.id}",
        headers=owner.headers,
    )
    assert response.status_code == 403
    assert response.json() == {"detail": "cannot remove the last Group Owner role from the group"}
    assert client.post(f"/api/group/{group_id}/leave", headers=owner.headers).status_code == 403


def test_remove_member_notifies_them(
    client: TestClient,
    mailer: RecordingMailer,
    owner: Account,
    guest: Account,
    group_id: str,
) -> None:
    _join(client, owner, group_id, guest)
    mailer.sent.clear()

    response = client.delete(f"/api/group/{group_id}/member/{guest.id}", headers=owner.headers)
    assert response.status_code == 204
    assert mailer.recipients() == [guest.email]
    assert client.get(f"/api/group/{group_id}", headers=guest.headers).status_code == 404


def test_member_can_leave(client: TestClient, owner: Account, guest: Account, group_id: str) -> None:
    _join(client, owner, group_id, guest)
    assert client.post(f"/api/group/{group_id}/leave", headers=guest.headers).status_code == 204
    members = client.get(f"/api/group/{group_id}/members", headers=owner.headers).json()
    assert [member["id"] for member in members] == [owner.id]


def test_delete_group(client: TestClient, owner: Account, group_id: str) -> None:
    assert client.delete(f"/api/group/{group_id}/delete", headers=owner.headers).status_code == 204
    assert client.get(f"/api/group/{group_id}", headers=owner.headers).status_code == 404
    names = [group["name"] for group in client.get("/api/group/list", headers=owner.headers).json()]
    assert names == [DEFAULT_GROUP_NAME]


def test_log_export_is_csv(client: TestClient, owner: Account, group_id: str) -> None:
    client.get(f"/api/logs/{group_id}", headers=owner.headers)
    client.app.state.services.audit.flush()  # type: ignore[attr-defined]

    response = client.get(f"/api/logs/{group_id}/export", headers=owner.headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "timestamp,action,status,email"
    assert lines[1].endswith(",view-logs,OK,owner@example.com")


def test_blank_rename_is_rejected(client: TestClient, owner: Account, group_id: str) -> None:
    response = client.patch(f"/api/group/{group_id}/update", json={"name": "   "}, headers=owner.headers)
    assert response.status_code == 400
    assert response.json()["detail"]["fields"] == {"name": "blank"}
