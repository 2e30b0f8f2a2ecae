"""Allow-list decisions for inbound senders.

Both checks are pure: they read only the instance config passed in and never
suspend, so the router can call them inline.
"""

from __future__ import annotations

from typing import Optional

from flowbridge.service.security import is_group_id, strip_user_suffix
from flowbridge.storage.models import InstanceConfig

WILDCARD = "*"


def is_group_authorized(group_id: str, config: Optional[InstanceConfig]) -> bool:
    if config is None:
        return False
    if WILDCARD in config.allowed_groups:
        return True
    return group_id in config.allowed_groups


def is_user_authorized(sender_id: str, config: Optional[InstanceConfig]) -> bool:
    """Check ``sender_id`` against the instance allow-list.

    A wildcard user entry admits everyone, group ids included. Otherwise
    group ids are checked against ``allowed_groups`` and user ids are compared
    with the ``@c.us`` suffix removed on both sides.
    """
    if config is None:
        return False
    if WILDCARD in config.allowed_users:
        return True
    if is_group_id(sender_id):
        return is_group_authorized(sender_id, config)
    normalized = strip_user_suffix(sender_id)
    return any(strip_user_suffix(entry) == normalized for entry in config.allowed_users)
