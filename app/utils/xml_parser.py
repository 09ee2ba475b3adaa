"""
Helpers for parsing Hikvision ISAPI XML event payloads.
Access controllers push EventNotificationAlert v2.0 XML with an
AccessControllerEvent block; the namespace varies between firmware lines.
"""

import xml.etree.ElementTree as ET
from typing import Optional


def _local(tag: str) -> str:
    """Strip the {namespace} prefix from an element tag."""
    return tag.split("}", 1)[1] if tag.startswith("{") else tag


def element_to_dict(element: ET.Element) -> dict:
    """
    Flatten an element into {localName: text | nested dict}.
    Repeated tags keep the first occurrence.
    """
    result: dict = {}
    for child in element:
        key = _local(child.tag)
        if key in result:
            continue
        if len(child):
            result[key] = element_to_dict(child)
        else:
            result[key] = child.text.strip() if child.text else None
    return result


def safe_parse_xml(raw_body: bytes) -> Optional[ET.Element]:
    """Parse XML bytes safely. Returns None on parse error."""
    try:
        return ET.fromstring(raw_body.decode("utf-8", errors="replace"))
    except ET.ParseError:
        return None
