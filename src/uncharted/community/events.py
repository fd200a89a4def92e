"""Publish community events over Redis pub/sub for per-profile delivery."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def profile_channel(profile_id: int) -> str:
    return f"community:user:{profile_id}"


async def publish_to_profile(
    redis: object | None,
    profile_id: int,
    event: str,
    data: dict[str, Any],
) -> None:
    """Publish an event to community:user:{profile_id}.

    Delivery is best-effort: the database write that caused the event is
    already flushed, so a Redis failure is logged and dropped.
    """
    if redis is None:
        return

    payload = {
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        await redis.publish(  # type: ignore[union-attr]
            profile_channel(profile_id),
            json.dumps(payload),
        )
    except Exception:
        logger.warning(
            "Failed to publish %s to community:user:%s",
            event,
            profile_id,
            exc_info=True,
        )
