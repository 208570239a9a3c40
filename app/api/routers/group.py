from __future__ import annotations

from fastapi import APIRouter, Response, status
from fastapi.responses import RedirectResponse

from app.api.deps import ServicesDep, SubjectId, raise_http_error
from app.domain.errors import AccessControlError
from app.domain.models import (
    GroupCreate,
    GroupRead,
    GroupUpdate,
    InvitationCreate,
    InvitationRead,
    MemberRead,
    MemberWithRoles,
    RoleRead,
    RoleWrite,
)

router = APIRouter()


@router.post("/create", response_model=GroupRead, status_code=status.HTTP_201_CREATED)
def create_group(payload: GroupCreate, subject_id: SubjectId, services: ServicesDep) -> GroupRead:
    try:
        group = services.groups.create_group(subject_id, payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return GroupRead.model_validate(group)


@router.get("/list", response_model=list[GroupRead])
def list_groups(subject_id: SubjectId, services: ServicesDep) -> list[GroupRead]:
    try:
        groups = services.groups.list_groups(subject_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return [GroupRead.model_validate(item) for item in groups]


@router.get("/join")
def join_group(invitation_id: str, services: ServicesDep) -> RedirectResponse:
    try:
        location = services.groups.accept_invitation(invitation_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return RedirectResponse(location, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/reject", status_code=status.HTTP_204_NO_CONTENT)
def reject_invitation(invitation_id: str, services: ServicesDep) -> Response:
    try:
        services.groups.reject_invitation(invitation_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{id}", response_model=GroupRead)
def get_group(id: str, subject_id: SubjectId, services: ServicesDep) -> GroupRead:
    try:
        group = services.groups.get_group(subject_id, id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return GroupRead.model_validate(group)


@router.patch("/{id}/update", response_model=GroupRead)
def rename_group(id: str, payload: GroupUpdate, services: ServicesDep) -> GroupRead:
    try:
        group = services.groups.rename_group(id, payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return GroupRead.model_validate(group)


@router.delete("/{id}/delete", status_code=status.HTTP_204_NO_CONTENT)
def delete_group(id: str, subject_id: SubjectId, services: ServicesDep) -> Response:
    try:
        services.groups.delete_group(id, subject_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{id}/members", response_model=list[MemberRead])
def list_members(id: str, subject_id: SubjectId, services: ServicesDep) -> list[MemberRead]:
    try:
        members = services.groups.list_members(subject_id, id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return [MemberRead.model_validate(item) for item in members]


@router.get("/{id}/members/roles", response_model=list[MemberWithRoles])
def members_with_roles(id: str, subject_id: SubjectId, services: ServicesDep) -> list[MemberWithRoles]:
    try:
        return services.groups.members_with_roles(subject_id, id)
    except AccessControlError as exc:
        raise_http_error(exc)


@router.post("/{id}/member/invite", response_model=InvitationRead, status_code=status.HTTP_201_CREATED)
def invite_member(
    id: str,
    payload: InvitationCreate,
    subject_id: SubjectId,
    services: ServicesDep,
) -> InvitationRead:
    try:
        invitation = services.groups.invite(id, subject_id, payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return InvitationRead.model_validate(invitation)


@router.delete("/{id}/member/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(id: str, user_id: str, services: ServicesDep) -> Response:
    try:
        services.groups.remove_member(id, user_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_group(id: str, subject_id: SubjectId, services: ServicesDep) -> Response:
    try:
        services.groups.leave_group(subject_id, id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{id}/roles", response_model=list[RoleRead])
def list_roles(id: str, subject_id: SubjectId, services: ServicesDep) -> list[RoleRead]:
    try:
        roles = services.groups.list_roles(subject_id, id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return [RoleRead.model_validate(item) for item in roles]


@router.put("/{id}/roles", response_model=list[RoleRead])
def upsert_roles(id: str, payload: list[RoleWrite], services: ServicesDep) -> list[RoleRead]:
    try:
        roles = services.groups.upsert_roles(id, payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return [RoleRead.model_validate(item) for item in roles]


@router.delete("/{id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(id: str, role_id: str, services: ServicesDep) -> Response:
    try:
        services.groups.delete_role(id, role_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{id}/roles/{role_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def assign_role(id: str, role_id: str, user_id: str, services: ServicesDep) -> Response:
    try:
        services.groups.assign_role(id, role_id, user_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{id}/roles/{role_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_role(id: str, role_id: str, user_id: str, services: ServicesDep) -> Response:
    try:
        services.groups.unassign_role(id, role_id, user_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
