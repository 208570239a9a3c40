from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from app.api.deps import ServicesDep
from app.domain.models import TokenVerifyRequest

router = APIRouter()


@router.post("/verify")
def verify_token(payload: TokenVerifyRequest, services: ServicesDep) -> dict[str, str]:
    credential = services.identity.verify_credential(payload.token)
    if not credential.valid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credential")
    return {"subject_id": credential.subject_id}
