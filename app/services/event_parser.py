"""
Normalizes provider access events into ParsedAccessEvent, whatever the
delivery path:
  - message-queue items from polling ({"offset": n, "data": {...} | "json"})
  - webhook pushes: {"messages": [...]}, {"events": [...]}, a list, or one event
  - ISAPI XML EventNotificationAlert / JSON with an AccessControllerEvent block
  - multipart bodies carrying one of the above plus a picture

Every event is classified as entry | exit | denied. Events without a provider
eventId get a deterministic id derived from device/time/person/card/door so a
webhook copy and a polled copy of the same swipe deduplicate.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from app.exceptions import UnknownEventShapeError
from app.schemas.provider import ProviderMessage
from app.utils.json_parser import first_present, is_json_body, safe_parse_json
from app.utils.logger import get_logger
from app.utils.xml_parser import element_to_dict, safe_parse_xml

logger = get_logger(__name__)

ENTRY, EXIT, DENIED = "entry", "exit", "denied"

_DENIED_WORDS = {"denied", "deny", "fail", "failed", "failure", "invalid", "reject", "rejected",
                 "refused", "unauthorized", "unauthorised", "forbidden", "illegal", "mismatch"}
_EXIT_WORDS = {"exit", "out", "checkout", "leave", "egress"}
_ENTRY_WORDS = {"entry", "enter", "in", "checkin", "access", "pass", "granted", "open", "ingress"}
_RESULT_DENIED = {"fail", "failed", "denied", "deny", "reject", "rejected", "false"}
_ATTENDANCE_ENTRY = {"checkin", "breakin", "overtimein"}
_ATTENDANCE_EXIT = {"checkout", "breakout", "overtimeout"}
# ISAPI AccessControllerEvent minor codes for refused authentications
# (0x06 no permission, 0x09 card expired, 0x27 fingerprint mismatch, 0x4c face mismatch)
_ISAPI_DENIED_MINORS = {0x06, 0x09, 0x27, 0x4C}

_EVENT_KEYS = ("eventId", "eventType", "AccessControllerEvent", "eventTime", "dateTime")


@dataclass
class ParsedAccessEvent:
    event_id: str
    branch_id: str
    event_type: str                 # entry | exit | denied
    event_time: datetime            # naive UTC
    device_id: Optional[str] = None
    door_id: Optional[str] = None
    person_id: Optional[str] = None
    person_name: Optional[str] = None
    card_no: Optional[str] = None
    picture_url: Optional[str] = None
    offset: Optional[int] = None
    raw_event_type: Optional[str] = None
    raw_payload: Optional[str] = None


# ── Classification ───────────────────────────────────────────────────────────
def _words(value: Any) -> set[str]:
    text = re.sub(r"([a-z])([A-Z])", r"\1 \2", str(value))
    return {w for w in re.split(r"[^a-zA-Z]+", text.lower()) if w}


def classify_event(event_type: Optional[str], direction: Any = None, result: Any = None,
                   attendance_status: Optional[str] = None, minor: Any = None) -> str:
    """Map provider hints to entry / exit / denied. Unknown types count as denied."""
    if result is not None and str(result).strip().lower() in _RESULT_DENIED:
        return DENIED
    try:
        if minor is not None and int(str(minor), 0) in _ISAPI_DENIED_MINORS:
            return DENIED
    except ValueError:
        pass

    words = _words(event_type or "")
    if words & _DENIED_WORDS:
        return DENIED

    status = (attendance_status or "").replace("_", "").lower()
    if status in _ATTENDANCE_ENTRY:
        return ENTRY
    if status in _ATTENDANCE_EXIT:
        return EXIT

    if direction is not None:
        d = str(direction).strip().lower()
        if d in ("1", "in", "entry", "enter"):
            return ENTRY
        if d in ("2", "out", "exit"):
            return EXIT

    if words & _EXIT_WORDS:
        return EXIT
    if words & _ENTRY_WORDS:
        return ENTRY
    return DENIED


def parse_event_time(value: Any) -> Optional[datetime]:
    """ISO-8601 or epoch (s / ms) → naive UTC datetime."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)) or str(value).isdigit():
            ts = float(value)
            if ts > 1e11:
                ts /= 1000.0
            return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def derive_event_id(device_id, event_time: Optional[datetime], person_id, card_no, door_id, event_type) -> str:
    parts = [str(p or "") for p in (device_id, event_time.isoformat() if event_time else "",
                                    person_id, card_no, door_id, event_type)]
    return "derived-" + hashlib.sha1("|".join(parts).encode()).hexdigest()


def _str(value: Any) -> Optional[str]:
    return None if value in (None, "") else str(value)


# ── Dict payloads ────────────────────────────────────────────────────────────
def normalize_event(data: Any, branch_id: str, offset: Optional[int] = None,
                    raw: Optional[str] = None) -> ParsedAccessEvent:
    """Normalize one event dict. Raises UnknownEventShapeError on unrecognised shapes."""
    if isinstance(data, (str, bytes)):
        decoded = safe_parse_json(data)
        if decoded is None:
            raise UnknownEventShapeError("event payload is not valid JSON")
        data = decoded
    if not isinstance(data, dict) or not any(k in data for k in _EVENT_KEYS):
        raise UnknownEventShapeError(
            f"unrecognised event payload: keys={sorted(data) if isinstance(data, dict) else type(data).__name__}"
        )

    acs = data.get("AccessControllerEvent")
    acs = acs if isinstance(acs, dict) else {}

    raw_type = _str(first_present(data, "eventType", "eventTypeName", "type"))
    event_time = parse_event_time(first_present(data, "eventTime", "dateTime", "happenTime", "time"))
    device_id = _str(first_present(data, "deviceId", "deviceSerial", "deviceSerialNo", "deviceID", "deviceSn"))
    door_id = _str(first_present(data, "doorIndexCode", "doorId", "doorNo") or first_present(acs, "doorNo"))
    person_id = _str(first_present(data, "personId", "employeeNo")
                     or first_present(acs, "employeeNoString", "employeeNo"))
    person_name = _str(first_present(data, "personName", "name") or acs.get("name"))
    card_no = _str(first_present(data, "cardNo") or acs.get("cardNo"))
    picture_url = _str(first_present(data, "pictureUrl", "picUri", "pictureURL", "picUrl")
                       or first_present(acs, "pictureURL", "picUri"))

    event_type = classify_event(
        raw_type,
        direction=first_present(data, "direction", "inAndOutType"),
        result=first_present(data, "result", "verifyResult", "accessResult"),
        attendance_status=_str(first_present(acs, "attendanceStatus") or data.get("attendanceStatus")),
        minor=first_present(acs, "subEventType", "minorEventType"),
    )

    event_id = _str(data.get("eventId"))
    if event_id is None:
        if event_time is None and device_id is None and person_id is None and card_no is None:
            raise UnknownEventShapeError("event carries no id, time, device or person")
        event_id = derive_event_id(device_id, event_time, person_id, card_no, door_id, event_type)

    if event_time is None:
        logger.debug(f"Event {event_id} has no timestamp, using receipt time")
        event_time = datetime.utcnow()

    return ParsedAccessEvent(
        event_id=event_id,
        branch_id=branch_id,
        event_type=event_type,
        event_time=event_time,
        device_id=device_id,
        door_id=door_id,
        person_id=person_id,
        person_name=person_name,
        card_no=card_no,
        picture_url=picture_url,
        offset=offset,
        raw_event_type=raw_type,
        raw_payload=raw,
    )


def parse_queue_messages(messages: list, branch_id: str) -> tuple[list[ParsedAccessEvent], int]:
    """
    Normalize message-queue items. Returns (events, rejected_count).
    Unrecognised items are logged and skipped so one bad message does not
    block the rest of the batch.
    """
    events: list[ParsedAccessEvent] = []
    rejected = 0
    for item in messages:
        try:
            message = ProviderMessage.model_validate(item)
            payload = message.data if message.data is not None else item
            events.append(normalize_event(payload, branch_id, offset=message.offset, raw=_raw(payload)))
        except (ValidationError, UnknownEventShapeError) as e:
            rejected += 1
            offset = item.get("offset") if isinstance(item, dict) else None
            logger.warning(f"Rejected event for branch {branch_id} at offset {offset}: {e}")
    return events, rejected


def _raw(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str, sort_keys=True)


# ── Webhook bodies ───────────────────────────────────────────────────────────
def _split_multipart(raw_body: bytes, content_type: str) -> list[dict]:
    """Split multipart body into a list of {body, content_type} dicts."""
    match = re.search(r"boundary=\"?([^\s;\"]+)\"?", content_type)
    if not match:
        logger.warning("Multipart content-type but no boundary found")
        return []

    boundary = match.group(1).encode()
    result = []
    for part in raw_body.split(b"--" + boundary):
        part = part.strip()
        if not part or part == b"--":
            continue
        if b"\r\n\r\n" in part:
            headers_block, body = part.split(b"\r\n\r\n", 1)
        elif b"\n\n" in part:
            headers_block, body = part.split(b"\n\n", 1)
        else:
            continue
        headers_str = headers_block.decode("utf-8", errors="replace").lower()
        ct_match = re.search(r"content-type:\s*([^\r\n;]+)", headers_str)
        result.append({
            "body": body.rstrip(b"\r\n"),
            "content_type": ct_match.group(1).strip() if ct_match else "",
        })
    return result


def _extract_from_multipart(raw_body: bytes, content_type: str) -> tuple[bytes, str]:
    """Pick the JSON/XML part out of a multipart push; image parts are ignored."""
    parts = _split_multipart(raw_body, content_type)
    for p in parts:
        if any(t in p["content_type"] for t in ("json", "xml", "text/plain")):
            return p["body"], p["content_type"]
    for p in parts:
        if not p["content_type"].startswith("image/"):
            return p["body"], p["content_type"]
    return raw_body, ""


def _xml_to_payload(raw_body: bytes) -> dict:
    root = safe_parse_xml(raw_body)
    if root is None:
        raise UnknownEventShapeError("body is neither JSON nor well-formed XML")
    return element_to_dict(root)


def parse_webhook_body(raw_body: bytes, branch_id: str,
                       content_type: str = "") -> tuple[list[ParsedAccessEvent], int]:
    """Auto-detect format and normalize every event in a webhook push."""
    if "multipart" in content_type.lower():
        raw_body, content_type = _extract_from_multipart(raw_body, content_type)

    if is_json_body(raw_body, content_type):
        data = safe_parse_json(raw_body)
        if data is None:
            raise UnknownEventShapeError("body is not valid JSON")
    else:
        data = _xml_to_payload(raw_body)

    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return parse_queue_messages(data["messages"], branch_id)
    if isinstance(data, dict) and isinstance(data.get("events"), list):
        return parse_queue_messages(data["events"], branch_id)
    if isinstance(data, list):
        return parse_queue_messages(data, branch_id)
    return parse_queue_messages([data], branch_id)
