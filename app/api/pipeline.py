from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Match
from starlette.types import Scope

from app.api.deps import Services, error_status
from app.domain.errors import AccessControlError, AuthenticationError, AuthorizationDeniedError
from app.domain.models import AuditEntry
from app.domain.permissions import Capability, evaluate, required_capability
from app.infra.audit import status_label
from app.infra.context import set_request_context
from app.infra.db import transaction

logger = logging.getLogger(__name__)

INTERNAL_TOKEN_HEADER = "X-Internal-Token"
EMAIL_PLACEHOLDER = "Error reading email"

EXEMPT_PATHS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"^/api/token/verify$",
        r"^/api/user/[^/]+/exists$",
        r"^/api/user/signup$",
        r"^/api/user/signup/(email_password|invitation|verify)$",
        r"^/api/user/login$",
        r"^/api/user/start_password_reset$",
        r"^/api/user/reset_password$",
        r"^/api/group/(join|reject)$",
        # Guarded by the internal token on the route itself.
        r"^/api/internal/",
        r"^/healthz$",
        r"^/readyz$",
        r"^/docs",
        r"^/redoc",
        r"^/openapi\.json$",
    )
)


def is_exempt(path: str) -> bool:
    return any(pattern.match(path) for pattern in EXEMPT_PATHS)


def resolve_route(app: Any, scope: Scope) -> tuple[str | None, dict[str, Any]]:
    for route in getattr(app, "routes", []):
        match, child_scope = route.matches(scope)
        if match == Match.FULL:
            return getattr(route, "path", None), dict(child_scope.get("path_params", {}))
    return None, {}


def _error(status_code: int, detail: Any, background: BackgroundTask | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail}, background=background)


@dataclass
class PipelineState:
    method: str
    path: str
    route_path: str | None = None
    path_params: dict[str, Any] = field(default_factory=dict)
    internal: bool = False
    subject_id: str | None = None
    capability: Capability | None = None
    group_id: str | None = None
    allowed: bool | None = None


class AuthorizationPipeline:
    """Internal bypass, identity, permission resolution, then enforcement and audit."""

    def __init__(self, services: Services) -> None:
        self._services = services

    def check_internal(self, token: str, state: PipelineState) -> Response | None:
        try:
            self._services.internal_tokens.check_token(token)
        except AuthenticationError:
            return _error(403, "invalid token")
        state.internal = True
        return None

    def authenticate(self, authorization: str | None, state: PipelineState) -> Response | None:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _error(401, "missing credential")
        credential = self._services.identity.verify_credential(token.strip())
        if not credential.valid:
            return _error(401, "invalid credential")
        if not self._services.users.user_exists(credential.subject_id):
            return _error(
                401,
                "unknown user",
                background=BackgroundTask(self._revoke_sessions, credential.subject_id),
            )
        state.subject_id = credential.subject_id
        return None

    def resolve_permission(self, state: PipelineState) -> Response | None:
        if state.route_path is None or state.subject_id is None:
            return None
        capability = required_capability(state.method, state.route_path)
        if capability is None:
            return None
        group_id = state.path_params.get("id")
        if not group_id:
            logger.error("route %s %s needs %s but has no group id", state.method, state.route_path, capability)
            return _error(500, "internal error")
        state.capability = capability
        state.group_id = str(group_id)
        state.allowed = self.decide(state.subject_id, state.group_id, capability)
        return None

    def decide(self, subject_id: str, group_id: str, capability: Capability) -> bool:
        with transaction(self._services.engine) as session:
            roles = self._services.memberships.read_member_roles(session, subject_id, group_id)
        return evaluate(roles, capability)

    def enforce(self, state: PipelineState) -> None:
        if state.allowed is False:
            raise AuthorizationDeniedError(f"{state.capability} denied in group {state.group_id}")

    def prepare(self, request: Request, state: PipelineState) -> Response | None:
        internal_token = request.headers.get(INTERNAL_TOKEN_HEADER)
        if internal_token is not None:
            return self.check_internal(internal_token, state)
        if is_exempt(state.path):
            return None
        try:
            denial = self.authenticate(request.headers.get("Authorization"), state)
            if denial is not None:
                return denial
            state.route_path, state.path_params = resolve_route(request.app, request.scope)
            denial = self.resolve_permission(state)
            if denial is not None:
                return denial
            self.enforce(state)
        except AccessControlError as exc:
            status_code, detail = error_status(exc)
            return _error(status_code, detail)
        except RedisError as exc:
            logger.error("authorization lookup failed: %s", exc)
            return _error(500, "internal error")
        return None

    def audit(self, state: PipelineState, status_code: int) -> None:
        if state.capability is None or state.group_id is None or state.subject_id is None:
            return
        entry = AuditEntry(
            group_id=state.group_id,
            action=state.capability.value,
            status=status_label(status_code),
            user_id=state.subject_id,
            email=self._email_for(state.subject_id),
        )
        try:
            self._services.audit.record(entry)
        except Exception:
            logger.exception("error recording audit entry for %s", state.group_id)

    def _email_for(self, subject_id: str) -> str:
        try:
            return self._services.email_cache.get(subject_id)
        except Exception as exc:
            logger.warning("error reading email for %s: %s", subject_id, exc)
            return EMAIL_PLACEHOLDER

    def _revoke_sessions(self, subject_id: str) -> None:
        try:
            self._services.identity.revoke_sessions(subject_id)
        except Exception:
            logger.exception("error revoking sessions for unknown user %s", subject_id)


class AuthorizationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        pipeline = AuthorizationPipeline(request.app.state.services)
        state = PipelineState(method=request.method, path=request.url.path)
        denial = await run_in_threadpool(pipeline.prepare, request, state)
        request.state.internal = state.internal
        request.state.subject_id = state.subject_id
        set_request_context(state.subject_id, state.group_id)
        if denial is not None:
            response = denial
        else:
            try:
                response = await call_next(request)
            except Exception:
                await run_in_threadpool(pipeline.audit, state, 500)
                raise
        await run_in_threadpool(pipeline.audit, state, response.status_code)
        return response
