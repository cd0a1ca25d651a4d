"""
Extraction Monitor - The Safety Net
===================================
Finds cases whose extraction was claimed (extract_status == "triggered")
but never reached a worker answer, e.g. because the process died between
the claim and the outbound call.

Reporting only: stalled and terminal cases are surfaced for an operator,
nothing here re-dispatches them.
"""

from datetime import datetime
from typing import Dict, List, Optional

import structlog

from database import CaseStore
from schemas.case_definitions import (
    ExtractionReport,
    ExtractStatus,
    StalledExtraction,
    utcnow,
)
from settings import Settings

logger = structlog.get_logger().bind(component="extraction_monitor")

MAX_CASES_PER_REPORT = 100


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


async def find_stalled_extractions(
    store: CaseStore,
    stall_minutes: int,
    limit: int = MAX_CASES_PER_REPORT,
) -> List[StalledExtraction]:
    """Cases stuck in "triggered" for longer than stall_minutes."""
    now = utcnow()
    stalled: List[StalledExtraction] = []

    for case in await store.list_by_extract_status(ExtractStatus.TRIGGERED.value, limit=limit):
        triggered_raw = case.payload.get("extract_triggered_at")
        triggered_at = _parse_timestamp(triggered_raw) or case.updated_at
        if triggered_at.tzinfo is None:
            triggered_at = triggered_at.replace(tzinfo=now.tzinfo)

        minutes = int((now - triggered_at).total_seconds() / 60)
        if minutes < stall_minutes:
            continue

        stalled.append(StalledExtraction(
            token=case.token,
            triggered_at=triggered_raw,
            storage_path=case.payload.get("notice_storage_path"),
            stalled_minutes=minutes,
        ))

    if stalled:
        logger.warning("stalled_extractions_found", count=len(stalled), threshold_minutes=stall_minutes)
    return stalled


async def get_extraction_report(store: CaseStore, settings: Settings) -> ExtractionReport:
    """Counts per extraction status plus the stalled cases."""
    counts: Dict[str, int] = await store.count_by_extract_status()
    stalled = await find_stalled_extractions(store, settings.extraction_stall_minutes)

    return ExtractionReport(
        status_counts=counts,
        stalled=stalled,
        stall_threshold_minutes=settings.extraction_stall_minutes,
    )
