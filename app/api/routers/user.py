from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Response, status
from fastapi.responses import RedirectResponse

from app.api.deps import ServicesDep, SubjectId, raise_http_error
from app.domain.errors import AccessControlError
from app.domain.models import (
    EmailPasswordSignupRequest,
    InvitationSignupRequest,
    LoginRequest,
    PasswordResetRequest,
    PasswordResetStartRequest,
    ProviderSignupRequest,
    TokenResponse,
    UserRead,
)

router = APIRouter()


@router.post("/signup", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def signup(payload: ProviderSignupRequest, services: ServicesDep) -> UserRead:
    try:
        user = services.users.signup_federated(payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return UserRead.model_validate(user)


@router.post("/signup/email_password", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def signup_email_password(
    payload: EmailPasswordSignupRequest,
    background_tasks: BackgroundTasks,
    services: ServicesDep,
) -> UserRead:
    try:
        user = services.users.signup_email_password(payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    background_tasks.add_task(services.users.send_verification, user)
    return UserRead.model_validate(user)


@router.post("/signup/invitation", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def signup_with_invitation(payload: InvitationSignupRequest, services: ServicesDep) -> UserRead:
    try:
        user = services.users.signup_with_invitation(payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return UserRead.model_validate(user)


@router.get("/signup/verify")
def verify_signup(token: str, services: ServicesDep) -> RedirectResponse:
    try:
        location = services.users.verify_signup(token)
    except AccessControlError as exc:
        raise_http_error(exc)
    return RedirectResponse(location, status_code=status.HTTP_303_SEE_OTHER)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, services: ServicesDep) -> TokenResponse:
    try:
        token = services.users.login(payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return TokenResponse(access_token=token)


@router.post("/start_password_reset", status_code=status.HTTP_202_ACCEPTED)
def start_password_reset(payload: PasswordResetStartRequest, services: ServicesDep) -> Response:
    try:
        services.users.start_password_reset(str(payload.email))
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.post("/reset_password", status_code=status.HTTP_204_NO_CONTENT)
def reset_password(payload: PasswordResetRequest, services: ServicesDep) -> Response:
    try:
        services.users.reset_password(payload)
    except AccessControlError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{user_id}/exists")
def user_exists(user_id: str, services: ServicesDep) -> dict[str, bool]:
    try:
        return {"exists": services.users.user_exists(user_id)}
    except AccessControlError as exc:
        raise_http_error(exc)


@router.get("/me", response_model=UserRead)
def read_me(subject_id: SubjectId, services: ServicesDep) -> UserRead:
    try:
        user = services.users.get_user(subject_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return UserRead.model_validate(user)


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_me(subject_id: SubjectId, services: ServicesDep) -> Response:
    try:
        services.users.delete_user(subject_id)
    except AccessControlError as exc:
        raise_http_error(exc)
    services.email_cache.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
