# app/routers/credentials.py
"""
Per-branch provider credentials + connection test.
The app secret is write-only: responses carry a masked copy.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.database import get_db
from app.exceptions import CredentialValidationError
from app.models.credential import ProviderCredential
from app.schemas.credential import CredentialIn, CredentialOut, ConnectionTestOut
from app.services import connection_prober
from app.services.credential_store import get_credential, upsert_credential
from app.utils.secrets import mask_secret

router = APIRouter()


def _to_out(credential: ProviderCredential) -> CredentialOut:
    return CredentialOut(
        branch_id=credential.branch_id,
        api_base_url=credential.api_base_url,
        app_key=credential.app_key,
        app_secret_masked=mask_secret(credential.app_secret),
        is_active=credential.is_active,
        subscription_id=credential.subscription_id,
        last_sync=credential.last_sync,
        last_sync_status=credential.last_sync_status,
        last_sync_error=credential.last_sync_error,
    )


@router.put("/branches/{branch_id}/credentials", response_model=CredentialOut,
            summary="Create or replace a branch's provider credentials")
def put_credentials(branch_id: str, body: CredentialIn, db: Session = Depends(get_db)):
    try:
        credential = upsert_credential(db, branch_id, body.api_base_url, body.app_key,
                                       body.app_secret, is_active=body.is_active)
    except CredentialValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _to_out(credential)


@router.get("/branches/{branch_id}/credentials", response_model=CredentialOut,
            summary="Branch credentials (secret masked)")
def read_credentials(branch_id: str, db: Session = Depends(get_db)):
    credential = get_credential(db, branch_id)
    if credential is None:
        raise HTTPException(status_code=404, detail="missing credentials")
    return _to_out(credential)


@router.post("/branches/{branch_id}/test-connection", response_model=ConnectionTestOut,
             summary="Validate credentials against the provider")
async def run_connection_test(branch_id: str, db: Session = Depends(get_db)):
    """Always 200; the outcome is in `success` / `message`."""
    result = await connection_prober.test_connection(db, branch_id)
    return ConnectionTestOut(success=result.success, message=result.message)
