from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, create_engine

from app.domain.errors import ConflictError, StorageError, TransactionAbortedError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://access:access@db:5432/access_control",
)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "0"))
DB_POOL_RECYCLE_SECONDS = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "180"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000"))


def build_engine(url: str = DATABASE_URL) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_recycle=DB_POOL_RECYCLE_SECONDS,
        connect_args=connect_args,
    )


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(f"{action}: conflicting record") from exc
    except SQLAlchemyError as exc:
        raise StorageError(f"{action}: {exc.__class__.__name__}") from exc


def _rollback(session: Session) -> None:
    try:
        session.rollback()
    except SQLAlchemyError as exc:
        logger.error("transaction rollback failed: %s", exc)
        raise TransactionAbortedError("unable to perform rollback") from exc


@contextmanager
def transaction(engine: Engine) -> Iterator[Session]:
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session
        except BaseException:
            _rollback(session)
            raise
        try:
            session.commit()
        except SQLAlchemyError as exc:
            logger.error("transaction commit failed: %s", exc)
            _rollback(session)
            raise TransactionAbortedError("error committing transaction") from exc


def check_db_ready(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
