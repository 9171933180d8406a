"""
Conflict resolution between a locally edited record and the server copy.

`merge` is a per-field approximation, not last-writer-wins by field:
the server record is the base, every local field overrides it, and
`updatedAt` becomes the later of the two timestamps.  An unknown
strategy keeps the server copy.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from agency_crm.sync.models import ConflictStrategy

logger = logging.getLogger(__name__)


def _as_datetime(value: Any) -> datetime | None:
    """Accept datetimes, ISO-8601 strings and epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def latest_timestamp(local_value: Any, server_value: Any) -> Any:
    """Return whichever raw value is later, keeping its original representation."""
    local_dt = _as_datetime(local_value)
    server_dt = _as_datetime(server_value)
    if local_dt is None:
        return server_value if server_dt is not None else local_value
    if server_dt is None:
        return local_value
    return local_value if local_dt > server_dt else server_value


def resolve_conflict(
    local_data: dict[str, Any],
    server_data: dict[str, Any],
    strategy: ConflictStrategy | str = ConflictStrategy.SERVER,
) -> dict[str, Any]:
    try:
        strategy = ConflictStrategy(strategy)
    except ValueError:
        logger.warning("Unknown conflict strategy %r, keeping the server copy", strategy)
        return server_data

    if strategy == ConflictStrategy.LOCAL:
        return local_data
    if strategy == ConflictStrategy.MERGE:
        merged = {**server_data, **local_data}
        merged["updatedAt"] = latest_timestamp(local_data.get("updatedAt"), server_data.get("updatedAt"))
        return merged
    return server_data
