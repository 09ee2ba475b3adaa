"""
Credential Store: per-branch provider credentials.
Validates only for non-emptiness; real validation is test_connection().
Any change to a credential drops the branch's cached token; a new URL or key
also drops the event subscription and its stored offset.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.exceptions import CredentialValidationError, MissingCredentialsError
from app.models.credential import ProviderCredential
from app.models.event_offset import EventOffset
from app.services.token_manager import TokenManager, token_manager as default_token_manager
from app.utils.logger import get_logger
from app.utils.secrets import mask_secret

logger = get_logger(__name__)


def get_credential(db: Session, branch_id: str) -> Optional[ProviderCredential]:
    return db.query(ProviderCredential).filter(ProviderCredential.branch_id == branch_id).first()


def require_active_credential(db: Session, branch_id: str) -> ProviderCredential:
    """Return the branch's credential or raise MissingCredentialsError."""
    credential = get_credential(db, branch_id)
    if credential is None:
        raise MissingCredentialsError(branch_id)
    if not credential.is_active:
        raise MissingCredentialsError(branch_id, "credentials inactive")
    return credential


def list_active_credentials(db: Session) -> list[ProviderCredential]:
    return (db.query(ProviderCredential)
            .filter(ProviderCredential.is_active.is_(True))
            .order_by(ProviderCredential.branch_id)
            .all())


def upsert_credential(db: Session, branch_id: str, api_base_url: str, app_key: str, app_secret: str,
                      is_active: bool = True,
                      tokens: Optional[TokenManager] = None) -> ProviderCredential:
    empty = [name for name, value in (("branch_id", branch_id), ("api_base_url", api_base_url),
                                      ("app_key", app_key), ("app_secret", app_secret))
             if not (value or "").strip()]
    if empty:
        raise CredentialValidationError(empty)

    now = datetime.utcnow()
    credential = get_credential(db, branch_id)
    if credential is None:
        credential = ProviderCredential(branch_id=branch_id, created_at=now)
        db.add(credential)

    previous_account = (credential.api_base_url, credential.app_key)
    credential.api_base_url = api_base_url.strip().rstrip("/")
    credential.app_key = app_key.strip()
    credential.app_secret = app_secret.strip()
    credential.is_active = is_active
    credential.updated_at = now
    if previous_account != (credential.api_base_url, credential.app_key):
        # Another provider account: its queue subscription and read position do not carry over
        credential.subscription_id = None
        db.query(EventOffset).filter(EventOffset.branch_id == branch_id).delete()
    db.commit()
    db.refresh(credential)

    (tokens or default_token_manager).invalidate(branch_id)
    logger.info(f"Credentials saved for branch {branch_id}: url={credential.api_base_url} "
                f"key={credential.app_key} secret={mask_secret(credential.app_secret)} active={is_active}")
    return credential


def set_active(db: Session, branch_id: str, is_active: bool,
               tokens: Optional[TokenManager] = None) -> ProviderCredential:
    credential = get_credential(db, branch_id)
    if credential is None:
        raise MissingCredentialsError(branch_id)
    credential.is_active = is_active
    credential.updated_at = datetime.utcnow()
    db.commit()
    (tokens or default_token_manager).invalidate(branch_id)
    logger.info(f"Credentials for branch {branch_id} {'activated' if is_active else 'deactivated'}")
    return credential


def record_sync_status(db: Session, credential: ProviderCredential, ok: bool, error: Optional[str] = None):
    """Stamp last_sync* columns. Caller commits."""
    credential.last_sync = datetime.utcnow()
    credential.last_sync_status = "success" if ok else "failed"
    credential.last_sync_error = None if ok else error
