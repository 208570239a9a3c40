from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from app.api.deps import Services
from app.api.pipeline import AuthorizationMiddleware
from app.api.routers import group, internal, logs, token, user
from app.infra.audit import AuditLogSink
from app.infra.auth import InternalTokenService
from app.infra.cache import UserEmailCache
from app.infra.context import RequestContextFilter
from app.infra.db import build_engine, check_db_ready
from app.infra.identity import RedisIdentityProvider
from app.infra.mailer import SmtpMailer
from app.infra.redis_state import build_redis, check_redis_ready
from app.services.group_service import GroupService
from app.services.membership_store import MembershipStore
from app.services.role_store import RoleStore
from app.services.user_service import UserService

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [subject=%(subject_id)s group=%(group_id)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(item, RequestContextFilter) for item in handler.filters):
            handler.addFilter(RequestContextFilter())


def build_services() -> Services:
    engine = build_engine()
    redis = build_redis()
    roles = RoleStore()
    memberships = MembershipStore(roles)
    identity = RedisIdentityProvider(redis)
    mailer = SmtpMailer()
    groups = GroupService(engine, roles, memberships, mailer)
    users = UserService(engine, memberships, groups, identity, mailer)
    return Services(
        engine=engine,
        roles=roles,
        memberships=memberships,
        groups=groups,
        users=users,
        audit=AuditLogSink(engine),
        email_cache=UserEmailCache(users.read_email),
        identity=identity,
        mailer=mailer,
        internal_tokens=InternalTokenService(),
        redis=redis,
    )


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        current: Services = app.state.services
        current.audit.start()
        current.email_cache.start()
        try:
            yield
        finally:
            current.email_cache.stop()
            current.audit.stop()

    app = FastAPI(
        title="access-control",
        description="Group, role and membership management with per-request authorization.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    app.add_middleware(AuthorizationMiddleware)

    app.include_router(group.router, prefix="/api/group", tags=["group"])
    app.include_router(user.router, prefix="/api/user", tags=["user"])
    app.include_router(token.router, prefix="/api/token", tags=["token"])
    app.include_router(logs.router, prefix="/api/logs", tags=["logs"])
    app.include_router(internal.router, prefix="/api/internal", tags=["internal"])

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> dict[str, object]:
        db_ok = check_db_ready(app.state.services.engine)
        redis = app.state.services.redis
        redis_ok = redis is not None and check_redis_ready(redis)
        checks = {
            "db": "ok" if db_ok else "fail",
            "redis": "ok" if redis_ok else "fail",
        }
        if not (db_ok and redis_ok):
            raise HTTPException(
                status_code=503,
                detail={"status": "not_ready", "checks": checks},
            )
        return {"status": "ready", "checks": checks}

    return app


configure_logging()
