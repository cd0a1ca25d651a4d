# services/event_log.py
# ============================================================================
# CASE LIFECYCLE SERVICE - THE BLACK BOX
# ============================================================================
# Every significant case transition is appended to the case_events log.
# Appending is best effort: a failed append is logged and swallowed, it
# never fails the operation that triggered it.
# ============================================================================

from typing import Any, Dict, Optional

import structlog

from database import CaseStore
from schemas.case_definitions import CaseEvent, CaseEventType

logger = structlog.get_logger().bind(component="event_log")


async def log_event(
    store: CaseStore,
    token: str,
    event_type: CaseEventType,
    data: Dict[str, Any],
    external_id: Optional[str] = None,
    severity: str = "info",
) -> Optional[str]:
    """
    Append a case event.

    Args:
        store: Record store holding the event log
        token: Case token the event belongs to
        event_type: One of CaseEventType
        data: Event-specific data
        external_id: Upstream id (e.g. Stripe event id) used to dedupe
        severity: Log level for the console line

    Returns:
        Event ID, or None when the event was a duplicate or the append failed
    """
    event = CaseEvent(
        token=token,
        type=event_type,
        data=data,
        external_id=external_id,
    )

    log_method = getattr(logger, severity.lower(), logger.info)
    log_method(
        event_type.value,
        event_id=event.id[:8],
        token=token[:16],
        external_id=external_id,
    )

    try:
        appended = await store.append_event(event)
    except Exception as e:
        logger.error("event_append_failed", event_type=event_type.value, token=token[:16], error=str(e))
        return None

    if not appended:
        logger.info("event_duplicate_skipped", event_type=event_type.value, external_id=external_id)
        return None

    return event.id
