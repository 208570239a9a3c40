from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from redis.exceptions import RedisError

from app.api.deps import ServicesDep, raise_http_error, require_internal
from app.api.pipeline import AuthorizationPipeline, resolve_route
from app.domain.errors import AccessControlError
from app.domain.models import InternalCheckRead, InternalCheckRequest
from app.domain.permissions import required_capability

router = APIRouter(dependencies=[Depends(require_internal)])


@router.post("/check_user", response_model=InternalCheckRead)
def check_user(payload: InternalCheckRequest, request: Request, services: ServicesDep) -> InternalCheckRead:
    """Answer whether the bearer of ``payload.token`` may call ``method path``."""
    try:
        credential = services.identity.verify_credential(payload.token)
    except RedisError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error") from exc
    if not credential.valid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credential")

    method = payload.method.upper()
    scope = {"type": "http", "method": method, "path": payload.path, "root_path": ""}
    route_path, path_params = resolve_route(request.app, scope)
    capability = required_capability(method, route_path) if route_path else None
    try:
        if not services.users.user_exists(credential.subject_id):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown user")
        if capability is None:
            return InternalCheckRead(subject_id=credential.subject_id, allowed=True)
        group_id = payload.group_id or path_params.get("id")
        if not group_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="group id required")
        allowed = AuthorizationPipeline(services).decide(credential.subject_id, str(group_id), capability)
    except AccessControlError as exc:
        raise_http_error(exc)
    return InternalCheckRead(subject_id=credential.subject_id, capability=capability.value, allowed=allowed)
