"""
Connection prober: validates a branch's credentials end to end (fresh token
exchange plus one authenticated device-count call) and turns the outcome into
a short message for the settings screen. Never raises.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.exceptions import (
    AuthError, AuthUnavailableError, InvalidCredentialsError, MissingCredentialsError,
    ProviderError, ProviderUnavailableError, TokenExpiredError,
)
from app.services.branch_router import BranchDeviceRouter
from app.services.credential_store import require_active_credential
from app.services.token_manager import TokenManager
from app.utils.logger import get_logger

logger = get_logger(__name__)

AUTH_REJECTED = "auth rejected"
NETWORK_UNREACHABLE = "network unreachable"


@dataclass
class ConnectionTestResult:
    success: bool
    message: str


def _describe_provider_error(e: Exception) -> str:
    if isinstance(e, ProviderUnavailableError):
        return NETWORK_UNREACHABLE
    if isinstance(e, TokenExpiredError):
        return AUTH_REJECTED
    if isinstance(e, ProviderError):
        if e.status is not None and e.status >= 500:
            return f"provider error (HTTP {e.status})"
        return f"provider error: {e.message}"
    return f"unexpected error: {e}"


def _describe_auth_error(e: AuthError) -> str:
    if isinstance(e, InvalidCredentialsError):
        return AUTH_REJECTED
    if isinstance(e, AuthUnavailableError) and e.__cause__ is not None:
        return _describe_provider_error(e.__cause__)
    return NETWORK_UNREACHABLE


async def test_connection(db: Session, branch_id: str, tokens: Optional[TokenManager] = None,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> ConnectionTestResult:
    try:
        credential = require_active_credential(db, branch_id)
    except MissingCredentialsError as e:
        return ConnectionTestResult(False, e.reason)

    # A private token manager: always a fresh exchange, no backoff, shared cache untouched
    tokens = tokens or TokenManager(retry_attempts=1, transport=transport)
    router = BranchDeviceRouter(tokens=tokens, transport=transport)

    try:
        count = await router.call_with_credential(credential, lambda client: client.count_devices())
    except AuthError as e:
        result = ConnectionTestResult(False, _describe_auth_error(e))
    except ProviderError as e:
        result = ConnectionTestResult(False, _describe_provider_error(e))
    except Exception as e:
        logger.error(f"Connection test for branch {branch_id} crashed: {e}", exc_info=True)
        result = ConnectionTestResult(False, _describe_provider_error(e))
    else:
        result = ConnectionTestResult(True, f"connected ({count} devices)")

    logger.info(f"Connection test for branch {branch_id}: success={result.success} ({result.message})")
    return result
