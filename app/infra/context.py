from __future__ import annotations

import logging
from contextvars import ContextVar

subject_id_ctx: ContextVar[str | None] = ContextVar("subject_id", default=None)
group_id_ctx: ContextVar[str | None] = ContextVar("group_id", default=None)


def set_request_context(subject_id: str | None, group_id: str | None = None) -> None:
    subject_id_ctx.set(subject_id)
    group_id_ctx.set(group_id)


def get_subject_id() -> str | None:
    return subject_id_ctx.get()


def get_group_id() -> str | None:
    return group_id_ctx.get()


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.subject_id = get_subject_id() or "-"
        record.group_id = get_group_id() or "-"
        return True
