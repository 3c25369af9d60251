"""Identifiers for queue items and conflict records.

Ids embed the creation time in epoch milliseconds so that logs and CSV exports
sort chronologically; the random suffix keeps ids minted in the same
millisecond apart, including across devices.
"""

import secrets
from datetime import datetime, timezone
from typing import Optional

from drms_sync.utils.timestamps import utcnow

QUEUE_ITEM_PREFIX = "sq"
CONFLICT_PREFIX = "conflict"


def generate_id(prefix: str, created_at: Optional[datetime] = None) -> str:
    """Generate ``<prefix>_<epoch ms>_<8 hex chars>``.

    Args:
        prefix: Record family, e.g. ``sq`` or ``conflict``
        created_at: Naive UTC creation time; defaults to now

    Returns:
        Generated unique ID
    """
    moment = (created_at or utcnow()).replace(tzinfo=timezone.utc)
    millis = int(moment.timestamp() * 1000)
    return f"{prefix}_{millis}_{secrets.token_hex(4)}"


def new_queue_item_id(created_at: Optional[datetime] = None) -> str:
    """Id for a sync queue item."""
    return generate_id(QUEUE_ITEM_PREFIX, created_at)


def new_conflict_id(created_at: Optional[datetime] = None) -> str:
    """Id for a conflict record."""
    return generate_id(CONFLICT_PREFIX, created_at)
