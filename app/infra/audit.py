from __future__ import annotations

import logging
import os
import queue
import threading

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.errors import StorageError
from app.domain.models import AuditEntry, AuditLog

logger = logging.getLogger(__name__)

AUDIT_WORKERS = int(os.getenv("AUDIT_WORKERS", "5"))
AUDIT_QUEUE_SIZE = int(os.getenv("AUDIT_QUEUE_SIZE", "1000"))

STATUS_OK = "OK"
STATUS_FORBIDDEN = "Forbidden"
STATUS_ERROR = "Error"
STATUS_UNAUTHORIZED = "Unauthorized"

_STOP = object()


def status_label(status_code: int) -> str:
    if 200 <= status_code < 300 or status_code == 409:
        return STATUS_OK
    if status_code == 401:
        return STATUS_UNAUTHORIZED
    if status_code == 403:
        return STATUS_FORBIDDEN
    return STATUS_ERROR


def write_audit_log(engine: Engine, entry: AuditEntry) -> None:
    log = AuditLog(
        group_id=entry.group_id,
        action=entry.action,
        status=entry.status,
        user_id=entry.user_id,
        email=entry.email,
        timestamp=entry.timestamp,
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


class AuditLogSink:
    def __init__(
        self,
        engine: Engine,
        *,
        workers: int = AUDIT_WORKERS,
        queue_size: int = AUDIT_QUEUE_SIZE,
    ) -> None:
        self._engine = engine
        self._worker_count = workers
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            for index in range(self._worker_count):
                thread = threading.Thread(
                    target=self._write_worker,
                    name=f"audit-writer-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("audit log sink started with %d writers", self._worker_count)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            threads, self._threads = self._threads, []
        for _ in threads:
            self._queue.put(_STOP)
        for thread in threads:
            thread.join(timeout)
        logger.info("audit log sink stopped")

    def record(self, entry: AuditEntry) -> None:
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            logger.warning(
                "audit queue full, dropping entry action=%s group=%s",
                entry.action,
                entry.group_id,
            )

    def flush(self) -> None:
        if self.running:
            self._queue.join()
            return
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._write(item)
            self._queue.task_done()

    def _write(self, item: object) -> None:
        if not isinstance(item, AuditEntry):
            return
        try:
            write_audit_log(self._engine, item)
        except Exception:
            logger.exception("error writing audit entry, entry dropped")

    def _write_worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def read_by_group(self, group_id: str) -> list[AuditLog]:
        statement = (
            select(AuditLog)
            .where(AuditLog.group_id == group_id)
            .order_by(col(AuditLog.timestamp))
        )
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StorageError("error reading audit log") from exc
