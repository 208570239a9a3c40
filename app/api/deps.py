from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, Request, status
from redis import Redis
from sqlalchemy.engine import Engine

from app.domain.errors import (
    AccessControlError,
    AuthenticationError,
    AuthorizationDeniedError,
    ConflictError,
    ForbiddenOperationError,
    InputValidationError,
    NotFoundError,
)
from app.infra.audit import AuditLogSink
from app.infra.auth import InternalTokenService
from app.infra.cache import UserEmailCache
from app.infra.identity import IdentityProvider
from app.infra.mailer import Mailer
from app.services.group_service import GroupService
from app.services.membership_store import MembershipStore
from app.services.role_store import RoleStore
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

INTERNAL_ERROR_DETAIL = "internal error"


@dataclass
class Services:
    engine: Engine
    roles: RoleStore
    memberships: MembershipStore
    groups: GroupService
    users: UserService
    audit: AuditLogSink
    email_cache: UserEmailCache
    identity: IdentityProvider
    mailer: Mailer
    internal_tokens: InternalTokenService
    redis: Redis | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_subject_id(request: Request) -> str:
    subject_id = getattr(request.state, "subject_id", None)
    if not isinstance(subject_id, str) or not subject_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing credential")
    return subject_id


def require_internal(request: Request) -> None:
    if getattr(request.state, "internal", False) is not True:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid token")


ServicesDep = Annotated[Services, Depends(get_services)]
SubjectId = Annotated[str, Depends(get_subject_id)]


def error_status(exc: AccessControlError) -> tuple[int, Any]:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND, str(exc)
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT, str(exc)
    if isinstance(exc, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED, str(exc)
    if isinstance(exc, AuthorizationDeniedError):
        # Never name the missing capability.
        return status.HTTP_403_FORBIDDEN, "missing permission"
    if isinstance(exc, ForbiddenOperationError):
        return status.HTTP_403_FORBIDDEN, str(exc)
    if isinstance(exc, InputValidationError):
        return status.HTTP_400_BAD_REQUEST, {"message": str(exc), "fields": exc.fields}
    logger.error("request failed: %s", exc, exc_info=exc)
    return status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR_DETAIL


def raise_http_error(exc: AccessControlError) -> NoReturn:
    status_code, detail = error_status(exc)
    raise HTTPException(status_code=status_code, detail=detail) from exc
