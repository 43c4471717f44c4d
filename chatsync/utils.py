"""
Utility functions for addressing, timestamps and pairing codes.
"""

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Optional

import qrcode
from qrcode.image.svg import SvgPathImage

logger = logging.getLogger(__name__)

PRIVATE_CHAT_SUFFIX = "@c.us"
GROUP_CHAT_SUFFIX = "@g.us"
BROADCAST_SUFFIX = "@broadcast"

_NON_DIGITS = re.compile(r"\D")
_UNSAFE_CLIENT_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def normalize_phone(address: Optional[str]) -> Optional[str]:
    """
    Strip every non-digit character from a protocol address.

    "905551234567@c.us" -> "905551234567", "+90 555 123" -> "90555123".
    Returns None when nothing numeric is left.
    """
    if not address:
        return None
    digits = _NON_DIGITS.sub("", str(address))
    return digits or None


def to_chat_id(phone_number: str) -> str:
    """Address a one-to-one chat for the given digits."""
    return f"{phone_number}{PRIVATE_CHAT_SUFFIX}"


def is_group_or_broadcast(address: Optional[str]) -> bool:
    """True for group chats and broadcast lists, including status@broadcast."""
    if not address:
        return False
    return address.endswith(GROUP_CHAT_SUFFIX) or address.endswith(BROADCAST_SUFFIX)


def client_id_for(session_name: str) -> str:
    """Filesystem-safe identifier used by providers for per-session auth data."""
    return _UNSAFE_CLIENT_ID_CHARS.sub("_", session_name)


def utc_now_iso() -> str:
    """Server time as an ISO-8601 UTC string with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def render_pairing_code(code: str) -> str:
    """
    Render a raw pairing code into a transportable image.

    Returns a data URL holding an SVG, so it can be stored in the
    sessions table and dropped straight into an <img> tag.
    """
    logger.debug(f"Rendering pairing code ({len(code)} chars)")
    image = qrcode.make(code, image_factory=SvgPathImage, border=1)
    encoded = base64.b64encode(image.to_string()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
