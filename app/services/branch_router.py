"""
Branch Device Router: every outbound provider command goes through here so it
is sent with the right branch's credentials, token and regional API domain.

A 401 from the provider invalidates the branch token and the command is
replayed once with a freshly exchanged token.
"""

from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from sqlalchemy.orm import Session

from app.exceptions import TokenExpiredError
from app.models.credential import ProviderCredential
from app.models.device import Device, Door
from app.services.credential_store import require_active_credential
from app.services.provider_client import ProviderClient
from app.services.token_manager import Token, TokenManager, token_manager as default_token_manager
from app.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def provider_base_url(token: Token, credential: ProviderCredential) -> str:
    """Use the token's area domain when the provider assigned one."""
    domain = (token.area_domain or "").strip()
    if not domain:
        return credential.api_base_url
    if not domain.startswith(("http://", "https://")):
        domain = f"https://{domain}"
    return domain.rstrip("/")


class BranchDeviceRouter:
    def __init__(self, tokens: Optional[TokenManager] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.tokens = tokens or default_token_manager
        self.transport = transport

    async def call(self, db: Session, branch_id: str,
                   operation: Callable[[ProviderClient], Awaitable[T]]) -> T:
        """Run `operation(client)` against the branch's provider account."""
        credential = require_active_credential(db, branch_id)
        return await self.call_with_credential(credential, operation)

    async def call_with_credential(self, credential: ProviderCredential,
                                   operation: Callable[[ProviderClient], Awaitable[T]]) -> T:
        for attempt in (1, 2):
            token = await self.tokens.get_valid_token(credential)
            base_url = provider_base_url(token, credential)
            try:
                async with ProviderClient(base_url, token.access_token, transport=self.transport) as client:
                    return await operation(client)
            except TokenExpiredError:
                self.tokens.invalidate(credential.branch_id)
                if attempt == 2:
                    raise
                logger.warning(f"Token rejected for branch {credential.branch_id}, re-authenticating")
        raise AssertionError("unreachable")


def resolve_door(db: Session, branch_id: str, door_id: int) -> Optional[Door]:
    """The door with this id, only if its device belongs to the branch."""
    return (db.query(Door)
            .join(Device, Door.device_id == Device.id)
            .filter(Door.id == door_id, Device.branch_id == branch_id)
            .first())
