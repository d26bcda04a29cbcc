from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from bizsuite.context import get_correlation_id
from bizsuite.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(
    event_type: str,
    payload: dict[str, Any],
    *,
    actor_user_id: str | None = None,
    org_id: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "org_id": org_id,
        "correlation_id": correlation_id or get_correlation_id(),
        "version": 1,
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
