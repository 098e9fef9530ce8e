"""
Gmail message parsing.

Turns a "full" format Gmail message resource into the attribute dict
used to create a Message row.
"""

import base64
import binascii
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

_ANGLE_ADDRESS = re.compile(r"<(.+?)>")
_DISPLAY_NAME = re.compile(r"^(.+?)\s*<")


# ============================================================================
# Headers and addresses
# ============================================================================


def get_headers(message_data: Dict[str, Any]) -> List[Dict[str, str]]:
    payload = message_data.get("payload") or {}
    return payload.get("headers") or []


def get_header(headers: List[Dict[str, str]], name: str) -> Optional[str]:
    """
    Exact, case-sensitive header lookup.

    Gmail preserves sender casing, so "Subject" and "subject" are
    different headers here.
    """
    for header in headers:
        if header.get("name") == name:
            return header.get("value")
    return None


def extract_email(header_value: Optional[str]) -> Optional[str]:
    """
    Extract the address part of an address header.

    Example:
        >>> extract_email('"Jane Doe" <jane@x.com>')
        'jane@x.com'
        >>> extract_email("jane@x.com")
        'jane@x.com'
    """
    if header_value is None:
        return None
    match = _ANGLE_ADDRESS.search(header_value)
    if match:
        return match.group(1)
    return header_value


def extract_name(header_value: Optional[str]) -> Optional[str]:
    """Display name before the angle-bracketed address, without quotes."""
    if header_value is None:
        return None
    match = _DISPLAY_NAME.match(header_value)
    if not match:
        return None
    return match.group(1).strip('"')


def parse_email_list(header_value: Optional[str]) -> List[str]:
    if header_value is None:
        return []
    addresses = [extract_email(part.strip()) for part in header_value.split(",")]
    return [a for a in addresses if a is not None]


# ============================================================================
# Body
# ============================================================================


def decode_body(encoded: Optional[str]) -> Optional[str]:
    """
    Decode Gmail's URL-safe, unpadded base64 body data.

    Returns None instead of raising when the data is not valid base64.
    """
    if encoded is None:
        return None

    standard = encoded.replace("-", "+").replace("_", "/")
    standard += "=" * (-len(standard) % 4)

    try:
        raw = base64.b64decode(standard, validate=True)
    except (binascii.Error, ValueError):
        return None

    return raw.decode("utf-8", errors="replace")


def _find_part_data(part: Dict[str, Any], mime_type: str) -> Optional[str]:
    """Depth-first search for the first part of mime_type that carries data."""
    parts = part.get("parts")
    if not parts:
        return None

    for child in parts:
        if child.get("mimeType") == mime_type:
            data = (child.get("body") or {}).get("data")
            if data:
                return data
            break

    for child in parts:
        data = _find_part_data(child, mime_type)
        if data:
            return data

    return None


def extract_body(message_data: Dict[str, Any]) -> Optional[str]:
    """Prefer text/plain, then text/html, then the top-level body data."""
    payload = message_data.get("payload")
    if not payload:
        return None

    data = _find_part_data(payload, "text/plain")
    if data is None:
        data = _find_part_data(payload, "text/html")
    if data is None:
        data = (payload.get("body") or {}).get("data")

    return decode_body(data)


# ============================================================================
# Dates
# ============================================================================


def parse_internal_date(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = re.match(r"\s*(\d+)", str(value))
    return int(match.group(1)) if match else None


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date_header(value: Optional[str]) -> Optional[datetime]:
    """
    Best-effort parse of a Date header (RFC 2822, then ISO 8601).

    Header dates are sender-controlled; anything unparseable yields None.
    """
    if not value:
        return None

    try:
        return _to_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        pass

    try:
        return _to_naive_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        return None


# ============================================================================
# Message
# ============================================================================


def parse_message(message_data: Dict[str, Any], account_id: int, user_id: str) -> Dict[str, Any]:
    """
    Parse a Gmail message resource into Message attributes.

    received_at comes from internalDate (ms since epoch) when present and
    only falls back to the Date header otherwise.

    Args:
        message_data: Message resource fetched with format="full"
        account_id: Owning MailAccount id
        user_id: Owning user id

    Returns:
        Dict of Message column values
    """
    headers = get_headers(message_data)
    from_header = get_header(headers, "From")

    internal_date = parse_internal_date(message_data.get("internalDate"))
    if internal_date is not None:
        received_at = datetime.utcfromtimestamp(internal_date / 1000)
    else:
        received_at = parse_date_header(get_header(headers, "Date"))

    return {
        "account_id": account_id,
        "user_id": user_id,
        "gmail_message_id": message_data.get("id"),
        "gmail_thread_id": message_data.get("threadId"),
        "subject": get_header(headers, "Subject"),
        "from_email": extract_email(from_header),
        "from_name": extract_name(from_header),
        "to_emails": parse_email_list(get_header(headers, "To")),
        "cc_emails": parse_email_list(get_header(headers, "Cc")),
        "labels": message_data.get("labelIds") or [],
        "snippet": message_data.get("snippet"),
        "body": extract_body(message_data),
        "received_at": received_at,
        "internal_date": internal_date,
    }
