from __future__ import annotations

import csv
import logging
from io import StringIO

from fastapi import APIRouter, Response

from app.api.deps import ServicesDep, SubjectId, raise_http_error
from app.domain.errors import AccessControlError
from app.domain.models import AuditEntryRead

logger = logging.getLogger(__name__)

router = APIRouter()

CSV_HEADER = ("timestamp", "action", "status", "email")


@router.get("/{id}", response_model=list[AuditEntryRead])
def read_logs(id: str, services: ServicesDep) -> list[AuditEntryRead]:
    try:
        entries = services.audit.read_by_group(id)
    except AccessControlError as exc:
        raise_http_error(exc)
    return [AuditEntryRead.model_validate(item) for item in entries]


@router.get("/{id}/export")
def export_logs(id: str, subject_id: SubjectId, services: ServicesDep) -> Response:
    try:
        entries = services.audit.read_by_group(id)
    except AccessControlError as exc:
        raise_http_error(exc)

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow([entry.timestamp.isoformat(), entry.action, entry.status, entry.email])
    logger.info("audit log of group %s exported by %s (%d rows)", id, subject_id, len(entries))

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="group_{id}_logs.csv"'},
    )
