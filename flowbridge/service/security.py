from __future__ import annotations

import hmac
import re
from typing import Optional

USER_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

_BLOCKED_TAGS = "script|style|iframe|object|embed|form|input|button|textarea|select|option"
_OPENING_TAG = re.compile(rf"<({_BLOCKED_TAGS}).*?>", re.IGNORECASE)
_ANY_TAG = re.compile(rf"</?({_BLOCKED_TAGS}).*?>", re.IGNORECASE)
_PHONE_NUMBER = re.compile(r"[0-9]{10,15}")


def sanitize_input(value: object) -> str:
    """Strip markup-like tags that could be interpreted downstream.

    Non-string input sanitizes to an empty string. Removal is repeated until
    nothing changes so nested fragments such as ``<scr<script>ipt>`` cannot
    reassemble into a tag.
    """
    if not isinstance(value, str):
        return ""
    result = value
    while True:
        cleaned = _ANY_TAG.sub("", _OPENING_TAG.sub("", result))
        if cleaned == result:
            return cleaned
        result = cleaned


def strip_user_suffix(identifier: str) -> str:
    return identifier.replace(USER_SUFFIX, "")


def is_group_id(identifier: str) -> bool:
    return identifier.endswith(GROUP_SUFFIX)


def to_chat_id(recipient: str) -> str:
    """Address a bare number as a user chat; ids that already carry a suffix pass through."""
    if "@" in recipient:
        return recipient
    return f"{recipient}{USER_SUFFIX}"


def is_valid_phone_number(value: Optional[str]) -> bool:
    if not value:
        return False
    return _PHONE_NUMBER.fullmatch(strip_user_suffix(value)) is not None


def credentials_match(provided: Optional[str], expected: str) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
