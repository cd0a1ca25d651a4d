# schemas/case_definitions.py
# ============================================================================
# CASE LIFECYCLE SERVICE - CASE, EVENT AND REQUEST SCHEMAS
# ============================================================================
# Purpose: Type-safe case records, audit events, extraction bookkeeping and
# the request/response bodies of the HTTP surface.
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class CaseStatus(str, Enum):
    NEW = "new"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"


class ExtractStatus(str, Enum):
    """Extraction sub-machine stored in payload.extract_status."""
    PENDING = "pending"
    TRIGGERED = "triggered"
    QUEUED = "queued"
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"
    NOT_DEPLOYED = "not_deployed"
    AUTH_FAILED = "auth_failed"


class CaseEventType(str, Enum):
    CASE_CREATED = "case_created"
    CASE_UPDATED = "case_updated"
    CHECKOUT_SESSION_CREATED = "checkout_session_created"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_ORPHANED = "payment_orphaned"
    EXTRACTION_TRIGGERED = "extraction_triggered"
    EXTRACTION_FINISHED = "extraction_finished"


# ============================================================================
# SECTION 2: RECORDS
# ============================================================================

class Case(BaseModel):
    """The central record, one per token."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    token: str
    email: Optional[str] = None
    status: CaseStatus = CaseStatus.NEW
    unlocked: bool = False
    payload: Dict[str, Any] = Field(default_factory=dict)

    # Gateway identifiers (first-class, never inside payload)
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def extract_status(self) -> Optional[str]:
        return self.payload.get("extract_status")


class CaseEvent(BaseModel):
    """Append-only audit record."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    token: str
    type: CaseEventType
    data: Dict[str, Any] = Field(default_factory=dict)
    external_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SaveResult(BaseModel):
    """Outcome of a save: the written record is authoritative even when
    the read-back could not confirm it."""
    case: Case
    created: bool
    verified: bool = True


class DocumentDescriptor(BaseModel):
    storage_path: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class ExtractionOutcome(BaseModel):
    token: str
    status: ExtractStatus
    http_status: Optional[int] = None
    error: Optional[str] = None
    worker_response: Optional[Dict[str, Any]] = None
    document: Optional[DocumentDescriptor] = None

    @property
    def accepted(self) -> bool:
        return self.status == ExtractStatus.QUEUED


# ============================================================================
# SECTION 3: REQUEST / RESPONSE BODIES
# ============================================================================

class SaveCaseRequest(BaseModel):
    token: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class SaveCaseResponse(BaseModel):
    success: bool
    case_id: str


class ReadCaseRequest(BaseModel):
    token: Optional[str] = None


class CaseProjection(BaseModel):
    """What the client is allowed to see of a case."""
    id: str
    token: str
    email: Optional[str] = None
    unlocked: bool
    status: CaseStatus
    created_at: datetime
    payload: Dict[str, Any]


class CheckoutRequest(BaseModel):
    token: Optional[str] = None
    email: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class CheckoutResponse(BaseModel):
    url: str


class TriggerExtractionRequest(BaseModel):
    token: Optional[str] = None
    storage_path: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class StalledExtraction(BaseModel):
    token: str
    triggered_at: Optional[str] = None
    storage_path: Optional[str] = None
    stalled_minutes: Optional[int] = None


class ExtractionReport(BaseModel):
    status_counts: Dict[str, int]
    stalled: List[StalledExtraction]
    stall_threshold_minutes: int
