# pipeline/extraction_dispatcher.py
# ============================================================================
# CASE LIFECYCLE SERVICE - EXTRACTION DISPATCHER
# ============================================================================
# Purpose: Hand a case's notice document to the Extraction Worker and record
# the worker's immediate accept/reject back into the case payload.
#
# ARCHITECTURE:
# - Need detection: pasted text or additional documents, AND
#   extract_status == "pending"
# - Descriptor derivation: virtual document for pasted text, else the first
#   additional document (current and legacy field names)
# - Dispatch: compare-and-set pending -> triggered BEFORE the outbound call,
#   then POST to the worker with the shared secret header
# - The dispatcher works on the record it was handed by the save; it never
#   re-reads the case it was scheduled for
#
# FAILURE HANDLING:
# - Worker outcomes, including a call that could not even be sent, are
#   written into the case (queued / auth_failed /
#   not_deployed / failed / not_configured), never raised to the save caller
# - At most one attempt per trigger; nothing here retries
# ============================================================================

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from errors import CaseNotFound, MissingField
from schemas.case_definitions import (
    Case,
    CaseEventType,
    DocumentDescriptor,
    ExtractionOutcome,
    ExtractStatus,
    utcnow,
)
from services.case_repository import CaseRepository, normalize_token
from services.event_log import log_event
from settings import Settings

logger = structlog.get_logger().bind(component="extraction_dispatcher")

SECRET_HEADER = "x-doc-secret"

PASTED_TEXT_KEYS = ("pastedText", "pasted_text")
ADDITIONAL_DOCS_KEYS = ("additionalDocs", "additional_docs")
PASTED_FILENAME = "pasted_text.txt"
PASTED_MIME_TYPE = "text/plain"

# (storage path, filename, mime type) per naming scheme, newest first
DOCUMENT_FIELD_SCHEMES = (
    ("storage_path", "filename", "mime_type"),
    ("path", "name", "type"),
)


# ============================================================================
# SECTION 1: NEED DETECTION
# ============================================================================

def _pasted_text(payload: Dict[str, Any]) -> Optional[str]:
    for key in PASTED_TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _additional_docs(payload: Dict[str, Any]) -> List[Any]:
    for key in ADDITIONAL_DOCS_KEYS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return value
    return []


def needs_extraction(payload: Dict[str, Any]) -> bool:
    """True iff there is something to extract and nothing was dispatched yet."""
    if payload.get("extract_status") != ExtractStatus.PENDING.value:
        return False
    return _pasted_text(payload) is not None or bool(_additional_docs(payload))


def virtual_pasted_path(token: str) -> str:
    return f"pasted/{token}/{PASTED_FILENAME}"


def derive_document(token: str, payload: Dict[str, Any]) -> Optional[DocumentDescriptor]:
    """Work out which document the worker should process, if any."""
    if _pasted_text(payload) is not None:
        return DocumentDescriptor(
            storage_path=virtual_pasted_path(token),
            filename=PASTED_FILENAME,
            mime_type=PASTED_MIME_TYPE,
        )

    docs = _additional_docs(payload)
    if not docs or not isinstance(docs[0], dict):
        return None

    first = docs[0]
    for path_key, name_key, type_key in DOCUMENT_FIELD_SCHEMES:
        storage_path = first.get(path_key)
        if isinstance(storage_path, str) and storage_path.strip():
            return DocumentDescriptor(
                storage_path=storage_path.strip(),
                filename=first.get(name_key),
                mime_type=first.get(type_key),
            )
    return None


# ============================================================================
# SECTION 2: DISPATCHER
# ============================================================================

class ExtractionDispatcher:
    """
    Responsibilities:
    1. Decide whether a freshly saved case needs extraction
    2. Claim the case (pending -> triggered) before calling out
    3. Call the Extraction Worker
    4. Record the worker's answer into the case
    """

    def __init__(
        self,
        repository: CaseRepository,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.store = repository.store
        self.settings = settings
        self._client = http_client
        self._sleep = sleep

    # ------------------------------------------------------------------------
    # Fire-and-forget entry point (scheduled after a save)
    # ------------------------------------------------------------------------

    async def run_after_save(self, case: Case) -> Optional[ExtractionOutcome]:
        """Wait out the store's visibility lag, then dispatch. Never raises."""
        try:
            if not needs_extraction(case.payload):
                return None

            delay = self.settings.extraction_dispatch_delay_seconds
            if delay > 0:
                await self._sleep(delay)
            return await self.dispatch(case)
        except Exception as e:
            logger.error("extraction_dispatch_crashed", token=case.token[:16], error=str(e), exc_info=True)
            return None

    async def dispatch(self, case: Case) -> Optional[ExtractionOutcome]:
        """Dispatch extraction for the record handed over by the save."""
        token = case.token
        log = logger.bind(token=token[:16])

        if not needs_extraction(case.payload):
            log.debug("extraction_not_needed", extract_status=case.extract_status)
            return None

        document = derive_document(token, case.payload)
        if document is None:
            log.info("extraction_no_document")
            return None

        if not self.settings.extraction_configured:
            log.warning("extraction_not_configured")
            return await self._record(
                token,
                ExtractStatus.NOT_CONFIGURED,
                document,
                error="Extraction worker URL or secret is not configured",
                expect_extract_status=ExtractStatus.PENDING.value,
            )

        claimed = await self.store.merge_payload(
            token,
            self._triggered_fragment(document),
            expect_extract_status=ExtractStatus.PENDING.value,
        )
        if claimed is None:
            log.info("extraction_already_claimed")
            return None

        return await self._call_worker(token, document)

    # ------------------------------------------------------------------------
    # Operator-facing trigger (TriggerExtraction endpoint)
    # ------------------------------------------------------------------------

    async def trigger(
        self,
        token: Any,
        storage_path: Any,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> ExtractionOutcome:
        """
        Explicitly (re-)run extraction for a case and a given document.

        Unlike dispatch(), this does not require extract_status == pending.
        """
        token = normalize_token(token)
        storage_path = normalize_token(storage_path)
        if not token or not storage_path:
            raise MissingField("token and storage_path are required")

        document = DocumentDescriptor(
            storage_path=storage_path,
            filename=(filename or "").strip() or None,
            mime_type=(mime_type or "").strip() or None,
        )

        await self.repository.get_case(token)

        if not self.settings.extraction_configured:
            return await self._record(
                token,
                ExtractStatus.NOT_CONFIGURED,
                document,
                error="Extraction worker URL or secret is not configured",
            )

        marked = await self.store.merge_payload(token, self._triggered_fragment(document))
        if marked is None:
            raise CaseNotFound("Case not found", details={"token": token})

        return await self._call_worker(token, document)

    # ------------------------------------------------------------------------
    # Worker call + outcome recording
    # ------------------------------------------------------------------------

    def _triggered_fragment(self, document: DocumentDescriptor) -> Dict[str, Any]:
        return {
            "extract_status": ExtractStatus.TRIGGERED.value,
            "notice_storage_path": document.storage_path,
            "notice_filename": document.filename,
            "notice_mime_type": document.mime_type,
            "extract_triggered_at": utcnow().isoformat(),
            "extract_error": None,
        }

    async def _post(self, body: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            SECRET_HEADER: self.settings.extraction_webhook_secret,
        }
        url = self.settings.extraction_webhook_url
        timeout = self.settings.extraction_timeout_seconds

        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers, timeout=timeout)

        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=body, headers=headers)

    async def _call_worker(self, token: str, document: DocumentDescriptor) -> ExtractionOutcome:
        log = logger.bind(token=token[:16], storage_path=document.storage_path)

        await log_event(
            self.store,
            token,
            CaseEventType.EXTRACTION_TRIGGERED,
            {"storage_path": document.storage_path, "filename": document.filename},
        )

        body = {
            "token": token,
            "storage_path": document.storage_path,
            "filename": document.filename,
            "mime_type": document.mime_type,
        }

        try:
            response = await self._post(body)
        except httpx.HTTPError as e:
            log.error("extraction_worker_unreachable", error=str(e))
            return await self._record(
                token,
                ExtractStatus.FAILED,
                document,
                error=self._excerpt(f"Webhook request failed: {e}"),
            )
        except Exception as e:
            log.error("extraction_worker_call_crashed", error=str(e), error_type=type(e).__name__)
            return await self._record(
                token,
                ExtractStatus.FAILED,
                document,
                error=self._excerpt(f"Webhook request could not be sent: {type(e).__name__}: {e}"),
            )

        log.info("extraction_worker_responded", http_status=response.status_code)

        if response.is_success:
            try:
                accepted = response.json()
            except ValueError:
                accepted = {}
            if not isinstance(accepted, dict):
                accepted = {"response": accepted}
            return await self._record(
                token,
                ExtractStatus.QUEUED,
                document,
                http_status=response.status_code,
                worker_response=accepted,
            )

        if response.status_code == 401:
            return await self._record(
                token,
                ExtractStatus.AUTH_FAILED,
                document,
                http_status=401,
                error="Webhook 401: extraction worker rejected the shared secret",
            )

        if response.status_code == 404:
            return await self._record(
                token,
                ExtractStatus.NOT_DEPLOYED,
                document,
                http_status=404,
                error="Webhook 404: extraction worker endpoint not found",
            )

        return await self._record(
            token,
            ExtractStatus.FAILED,
            document,
            http_status=response.status_code,
            error=self._excerpt(f"Webhook {response.status_code}: {response.text}"),
        )

    def _excerpt(self, text: str) -> str:
        return text[: self.settings.extraction_error_excerpt_chars]

    async def _record(
        self,
        token: str,
        status: ExtractStatus,
        document: DocumentDescriptor,
        http_status: Optional[int] = None,
        error: Optional[str] = None,
        worker_response: Optional[Dict[str, Any]] = None,
        expect_extract_status: Optional[str] = None,
    ) -> ExtractionOutcome:
        """Write the outcome into the case. Store errors are logged, not raised."""
        now = utcnow().isoformat()
        fragment: Dict[str, Any] = {"extract_status": status.value}

        if status == ExtractStatus.QUEUED:
            fragment["webhook_response"] = worker_response or {}
            fragment["extract_queued_at"] = now
        else:
            fragment["extract_error"] = error
            fragment["extract_failed_at"] = now

        outcome = ExtractionOutcome(
            token=token,
            status=status,
            http_status=http_status,
            error=error,
            worker_response=worker_response,
            document=document,
        )

        try:
            written = await self.store.merge_payload(token, fragment, expect_extract_status=expect_extract_status)
        except Exception as e:
            logger.error("extraction_outcome_not_recorded", token=token[:16], status=status.value, error=str(e))
            return outcome

        if written is None:
            logger.warning("extraction_outcome_skipped", token=token[:16], status=status.value)
            return outcome

        await log_event(
            self.store,
            token,
            CaseEventType.EXTRACTION_FINISHED,
            {"extract_status": status.value, "http_status": http_status},
            severity="info" if status == ExtractStatus.QUEUED else "warning",
        )
        return outcome
