# services/__init__.py
# ============================================================================
# CASE LIFECYCLE SERVICE - SERVICES MODULE
# ============================================================================
# Case repository facade and the audit event log
# ============================================================================

from services.case_repository import (
    CaseRepository,
    normalize_token,
    validate_token,
    mask_email,
    project_case,
)

from services.event_log import log_event

__all__ = [
    # Case repository
    "CaseRepository",
    "normalize_token",
    "validate_token",
    "mask_email",
    "project_case",
    # Event log
    "log_event",
]
