"""
Credential Endpoints

GET    /api/v1/credentials - Whether an API key is configured
PUT    /api/v1/credentials - Provide an API key (wakes pending upscale requests)
DELETE /api/v1/credentials - Forget the API key

The key itself is never returned.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from threadgenie.core.exceptions import ValidationError
from threadgenie.core.logging import get_logger
from threadgenie.api.dependencies import get_credential_gate
from threadgenie.engines.generative.credentials import ApiKeyGate

logger = get_logger(__name__)
router = APIRouter()


class CredentialRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=512)


class CredentialStatus(BaseModel):
    has_credential: bool


@router.get("", response_model=CredentialStatus)
async def get_credential_status(gate: ApiKeyGate = Depends(get_credential_gate)):
    return CredentialStatus(has_credential=gate.has_credential())


@router.put("", response_model=CredentialStatus)
async def provide_credential(
    request: CredentialRequest,
    gate: ApiKeyGate = Depends(get_credential_gate),
):
    try:
        gate.provide(request.api_key)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return CredentialStatus(has_credential=True)


@router.delete("", response_model=CredentialStatus)
async def revoke_credential(gate: ApiKeyGate = Depends(get_credential_gate)):
    gate.revoke()
    return CredentialStatus(has_credential=False)
