"""
Async client for the access-control provider's OpenAPI (Hikvision Partner / HPC gateway).

Every endpoint answers with an envelope: {"code": "0", "msg": "...", "data": {...}}.
A non-zero code is turned into a ProviderError carrying the vendor code and a
readable message from the known-code table below.

Endpoint base: {apiBaseUrl}/api/hpcgw/v1/...
"""

from datetime import datetime
from typing import Any, Optional

import httpx

from app.config import settings
from app.exceptions import ProviderError, ProviderUnavailableError, TokenExpiredError
from app.utils.logger import get_logger

logger = get_logger(__name__)

API_PREFIX = "/api/hpcgw/v1"
MAX_DEVICE_PAGES = 1000   # Hard stop for providers that ignore pageNo

# Known vendor error codes → (readable message, HTTP-ish status)
PROVIDER_ERRORS: dict[str, tuple[str, int]] = {
    "EVZ20002": ("Device does not exist", 404),
    "EVZ20007": ("The device is offline", 503),
    "EVZ0012": ("Adding device failed", 400),
    "EVZ20014": ("Incorrect device serial number", 400),
    "0x400019F1": ("The maximum number of devices reached", 429),
    "0x30000010": ("Database search failed", 500),
    "0x30001000": ("HBP Exception", 500),
    "0x01400003": ("Certificates mismatched", 403),
    "0x01400004": ("Device is not activated", 401),
    "0x01400006": ("IP address is banned", 403),
    "0x4000109D": ("No record found", 404),
    "EVZ10029": ("API calling frequency exceeded limit", 429),
    "TOKEN_EXPIRED": ("Access token expired", 401),
    "PERSON_NOT_FOUND": ("Person not found on provider", 404),
    "DEVICE_OFFLINE": ("The device is offline", 503),
}


def describe_error(code: str, fallback: Optional[str] = None) -> tuple[str, int]:
    """Map a vendor error code to (message, status). Unknown codes default to 400."""
    if code in PROVIDER_ERRORS:
        return PROVIDER_ERRORS[code]
    return (fallback or f"Provider error: {code}", 400)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class ProviderClient:
    """
    One client per (base URL, token). Use as an async context manager:

        async with ProviderClient(base_url, token.access_token) as client:
            devices, total = await client.list_devices()
    """

    def __init__(self, base_url: str, access_token: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._timeout = timeout if timeout is not None else settings.PROVIDER_HTTP_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProviderClient":
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout,
                                         transport=self._transport)
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Transport ────────────────────────────────────────────────────────────
    async def _post(self, path: str, payload: dict, authenticated: bool = True) -> Any:
        if self._client is None:
            raise RuntimeError("ProviderClient used outside of 'async with'")

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.access_token}"

        url = f"{API_PREFIX}{path}"
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Cannot reach provider at {self.base_url}: {e}") from e

        logger.debug(f"POST {path} → HTTP {response.status_code}")
        return self._unwrap(path, response)

    @staticmethod
    def _unwrap(path: str, response: httpx.Response) -> Any:
        status = response.status_code
        if status == 401:
            raise TokenExpiredError("Provider rejected the access token", status=status)

        try:
            body = response.json()
        except ValueError:
            body = None

        if status >= 400:
            code = str(body.get("code")) if isinstance(body, dict) and body.get("code") is not None else None
            msg = body.get("msg") if isinstance(body, dict) else None
            raise ProviderError(msg or f"{path} returned HTTP {status}", code=code, status=status)

        if not isinstance(body, dict):
            raise ProviderError(f"{path} returned a non-JSON body", status=status)

        code = str(body.get("code", "0"))
        if code != "0":
            message, mapped_status = describe_error(code, body.get("msg"))
            if mapped_status == 401 and code == "TOKEN_EXPIRED":
                raise TokenExpiredError(message, code=code, status=mapped_status)
            raise ProviderError(message, code=code, status=mapped_status)

        return body.get("data") or {}

    # ── Token ────────────────────────────────────────────────────────────────
    async def request_token(self, app_key: str, app_secret: str) -> dict:
        return await self._post("/token/get", {"appKey": app_key, "secretKey": app_secret},
                                authenticated=False)

    # ── Devices ──────────────────────────────────────────────────────────────
    async def list_devices(self, page_no: int = 1,
                           page_size: Optional[int] = None) -> tuple[list[dict], Optional[int]]:
        """One page of devices plus the provider's total count (None when the page carries none)."""
        page_size = page_size or settings.DEVICE_PAGE_SIZE
        data = await self._post("/device/list", {"pageNo": page_no, "pageSize": page_size})
        devices = data.get("devices") or data.get("list") or []
        total = data.get("totalCount", data.get("total"))
        return devices, int(total) if total is not None else None

    async def count_devices(self) -> int:
        _, total = await self.list_devices(page_no=1, page_size=1)
        if total is not None:
            return total
        # No total in the response: count by paging
        page_size = settings.DEVICE_PAGE_SIZE
        count = 0
        for page_no in range(1, MAX_DEVICE_PAGES + 1):
            devices, _ = await self.list_devices(page_no=page_no, page_size=page_size)
            count += len(devices)
            if len(devices) < page_size:
                break
        return count

    async def list_doors(self, device_serial: str) -> list[dict]:
        data = await self._post("/door/list", {"deviceSerial": device_serial})
        if isinstance(data, list):
            return data
        return data.get("doors") or data.get("list") or []

    # ── Persons ──────────────────────────────────────────────────────────────
    async def add_person(self, member_id: str, name: str) -> dict:
        payload = {
            "personCode": member_id,
            "name": name,
            "personType": 1,   # 1 = normal person
        }
        return await self._post("/person/add", payload)

    async def delete_person(self, person_id: str) -> None:
        await self._post("/person/delete", {"personId": person_id})

    # ── Access privileges ────────────────────────────────────────────────────
    async def configure_privilege(self, person_id: str, device_serial: str, door_nos: list[int],
                                  valid_from: Optional[datetime] = None,
                                  valid_until: Optional[datetime] = None) -> None:
        payload: dict = {"personId": person_id, "deviceSerialNo": device_serial, "doorList": door_nos}
        if valid_from:
            payload["validStartTime"] = _iso(valid_from)
        if valid_until:
            payload["validEndTime"] = _iso(valid_until)
        await self._post("/acs/privilege/config", payload)

    async def delete_privilege(self, person_id: str, device_serial: str, door_nos: list[int]) -> None:
        await self._post("/acs/privilege/delete",
                         {"personId": person_id, "deviceSerialNo": device_serial, "doorList": door_nos})

    # ── Message queue ────────────────────────────────────────────────────────
    async def subscribe(self, event_types: list[str]) -> str:
        data = await self._post("/mq/subscribe", {"eventTypes": event_types})
        subscription_id = data.get("subscriptionId") or data.get("consumerId")
        if not subscription_id:
            raise ProviderError("Subscription response carried no subscription id")
        return str(subscription_id)

    async def fetch_messages(self, subscription_id: str, offset: Optional[int],
                             max_messages: Optional[int] = None) -> list[dict]:
        payload = {
            "subscriptionId": subscription_id,
            "maxMessages": max_messages or settings.POLL_MAX_MESSAGES,
        }
        if offset is not None:
            payload["offset"] = offset
        data = await self._post("/mq/messages", payload)
        if isinstance(data, list):
            return data
        return data.get("messages") or data.get("list") or []

    async def acknowledge_offset(self, subscription_id: str, offset: int) -> None:
        await self._post("/mq/offset", {"subscriptionId": subscription_id, "offset": offset})
