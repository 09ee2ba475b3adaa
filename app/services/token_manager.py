"""
Token Manager: exchanges a branch's app key/secret for a short-lived access
token and keeps it in process memory until shortly before it expires.

- Cache key: branch_id. A cached token is reused while now < expires_at - skew.
- A credential change (base URL, key or secret) invalidates the cached token.
- Concurrent callers for the same branch and credential share one in-flight refresh.
- Rejected credentials fail fast (InvalidCredentialsError); network trouble is
  retried with bounded exponential backoff before AuthUnavailableError.
Tokens are never persisted and secrets are never logged.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from app.config import settings
from app.exceptions import (
    AuthUnavailableError,
    InvalidCredentialsError,
    ProviderError,
    ProviderUnavailableError,
)
from app.services.provider_client import ProviderClient
from app.utils.logger import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Token:
    access_token: str
    expires_at: datetime            # timezone-aware UTC
    area_domain: Optional[str] = None

    def is_fresh(self, now: datetime, skew: timedelta) -> bool:
        return now < self.expires_at - skew

    def __repr__(self):
        return f"<Token expires_at={self.expires_at.isoformat()} area={self.area_domain}>"


@dataclass(frozen=True)
class _CredentialSnapshot:
    branch_id: str
    api_base_url: str
    app_key: str
    app_secret: str

    @classmethod
    def of(cls, credential: Any) -> "_CredentialSnapshot":
        return cls(str(credential.branch_id), credential.api_base_url,
                   credential.app_key, credential.app_secret)

    @property
    def fingerprint(self) -> str:
        raw = f"{self.api_base_url}|{self.app_key}|{self.app_secret}".encode()
        return hashlib.sha256(raw).hexdigest()


def parse_expiry(data: dict, now: datetime, default_ttl: int) -> datetime:
    """
    Resolve the token expiry from a token/get payload.
    expireTime may be epoch ms, epoch seconds or ISO-8601; expiresIn is seconds.
    """
    expire_time = data.get("expireTime")
    if expire_time not in (None, ""):
        if isinstance(expire_time, (int, float)) or str(expire_time).isdigit():
            value = float(expire_time)
            if value > 1e11:        # milliseconds
                value /= 1000.0
            return datetime.fromtimestamp(value, tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(str(expire_time).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Unparseable expireTime {expire_time!r}, falling back to expiresIn/default")

    expires_in = data.get("expiresIn") or data.get("expires_in")
    if expires_in:
        return now + timedelta(seconds=int(expires_in))
    return now + timedelta(seconds=default_ttl)


class TokenManager:
    def __init__(self, skew_seconds: Optional[int] = None, retry_attempts: Optional[int] = None,
                 retry_base_delay: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], datetime] = _utcnow,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.skew = timedelta(seconds=settings.TOKEN_EXPIRY_SKEW_SECONDS if skew_seconds is None else skew_seconds)
        self.retry_attempts = max(1, retry_attempts or settings.TOKEN_RETRY_ATTEMPTS)
        self.retry_base_delay = settings.TOKEN_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self.transport = transport
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, tuple[Token, str]] = {}
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}   # (branch, fingerprint) -> refresh

    async def get_valid_token(self, credential: Any) -> Token:
        """Return a token valid for at least `skew` more seconds, refreshing if needed."""
        snapshot = _CredentialSnapshot.of(credential)
        cached = self._cache.get(snapshot.branch_id)
        if cached:
            token, fingerprint = cached
            if fingerprint == snapshot.fingerprint and token.is_fresh(self._clock(), self.skew):
                return token

        # Only callers holding the same credential share a refresh
        key = (snapshot.branch_id, snapshot.fingerprint)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(snapshot), name=f"token-refresh-{snapshot.branch_id}")
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_inflight(k, t))
        else:
            logger.debug(f"Joining in-flight token refresh for branch {snapshot.branch_id}")
        return await asyncio.shield(task)

    def invalidate(self, branch_id: str):
        """Drop the cached token so the next caller re-authenticates."""
        if self._cache.pop(str(branch_id), None) is not None:
            logger.info(f"Token invalidated for branch {branch_id}")

    def cached_token(self, branch_id: str) -> Optional[Token]:
        entry = self._cache.get(str(branch_id))
        return entry[0] if entry else None

    def _forget_inflight(self, key: tuple[str, str], task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, cred: _CredentialSnapshot) -> Token:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with ProviderClient(cred.api_base_url, transport=self.transport) as client:
                    data = await client.request_token(cred.app_key, cred.app_secret)
                return self._store(cred, data)
            except ProviderUnavailableError as e:
                last_error = e
            except ProviderError as e:
                if e.status is not None and (e.status >= 500 or e.status == 429):
                    last_error = e
                else:
                    logger.error(f"Token exchange rejected for branch {cred.branch_id}: {e}")
                    raise InvalidCredentialsError(cred.branch_id, e.message) from e

            if attempt < self.retry_attempts:
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Token exchange for branch {cred.branch_id} failed "
                    f"(attempt {attempt}/{self.retry_attempts}): {last_error}. Retry in {delay}s"
                )
                await self._sleep(delay)

        logger.error(f"Token exchange for branch {cred.branch_id} gave up: {last_error}")
        raise AuthUnavailableError(
            cred.branch_id, f"provider unavailable after {self.retry_attempts} attempts: {last_error}"
        ) from last_error

    def _store(self, cred: _CredentialSnapshot, data: dict) -> Token:
        access_token = data.get("accessToken")
        if not access_token:
            raise InvalidCredentialsError(cred.branch_id, "token response carried no access token")

        now = self._clock()
        token = Token(
            access_token=access_token,
            expires_at=parse_expiry(data, now, settings.DEFAULT_TOKEN_TTL_SECONDS),
            area_domain=data.get("areaDomain") or None,
        )
        self._cache[cred.branch_id] = (token, cred.fingerprint)
        logger.info(f"Token refreshed for branch {cred.branch_id} (expires {token.expires_at.isoformat()})")
        return token


token_manager = TokenManager()
