import asyncio
import json

import httpx
import pytest

from conftest import DOC_SECRET, WORKER_URL
from errors import CaseNotFound, MissingField
from pipeline.extraction_dispatcher import (
    ExtractionDispatcher,
    derive_document,
    needs_extraction,
    virtual_pasted_path,
)
from schemas.case_definitions import CaseEventType, ExtractStatus


@pytest.fixture
def dispatcher(repository, settings, worker, sleeps) -> ExtractionDispatcher:
    return ExtractionDispatcher(repository, settings, http_client=worker.client(), sleep=sleeps)


def _save(repository, token, payload):
    return asyncio.run(repository.save_case(token, payload)).case


# =============================================================================
# Need detection / document derivation
# =============================================================================

@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"pastedText": "Notice text", "extract_status": "pending"}, True),
        ({"pasted_text": "Notice text", "extract_status": "pending"}, True),
        ({"additionalDocs": [{"storage_path": "u/1.pdf"}], "extract_status": "pending"}, True),
        ({"additional_docs": [{"path": "u/1.pdf"}], "extract_status": "pending"}, True),
        ({"pastedText": "Notice text"}, False),
        ({"pastedText": "Notice text", "extract_status": "queued"}, False),
        ({"pastedText": "   ", "extract_status": "pending"}, False),
        ({"additionalDocs": [], "extract_status": "pending"}, False),
        ({"name": "Jane", "extract_status": "pending"}, False),
    ],
)
def test_needs_extraction(payload, expected):
    assert needs_extraction(payload) is expected


def test_pasted_text_wins_over_documents():
    document = derive_document("case_abc123", {
        "pastedText": "Notice text",
        "additionalDocs": [{"storage_path": "uploads/notice.pdf"}],
    })
    assert document.storage_path == "pasted/case_abc123/pasted_text.txt"
    assert document.filename == "pasted_text.txt"
    assert document.mime_type == "text/plain"


def test_first_additional_document_with_current_names():
    document = derive_document("case_abc123", {
        "additionalDocs": [
            {"storage_path": "uploads/notice.pdf", "filename": "notice.pdf", "mime_type": "application/pdf"},
            {"storage_path": "uploads/other.pdf"},
        ],
    })
    assert document.storage_path == "uploads/notice.pdf"
    assert document.filename == "notice.pdf"
    assert document.mime_type == "application/pdf"


def test_first_additional_document_with_legacy_names():
    document = derive_document("case_abc123", {
        "additional_docs": [{"path": "uploads/scan.png", "name": "scan.png", "type": "image/png"}],
    })
    assert document.storage_path == "uploads/scan.png"
    assert document.filename == "scan.png"
    assert document.mime_type == "image/png"


def test_document_without_path_yields_nothing():
    assert derive_document("case_abc123", {"additionalDocs": [{"filename": "x.pdf"}]}) is None
    assert derive_document("case_abc123", {"additionalDocs": ["uploads/x.pdf"]}) is None


def test_virtual_path():
    assert virtual_pasted_path("case_xyz") == "pasted/case_xyz/pasted_text.txt"


# =============================================================================
# Dispatch after save
# =============================================================================

def test_pending_pasted_text_is_queued(dispatcher, repository, store, worker):
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.QUEUED
    assert len(worker.requests) == 1
    request = worker.requests[0]
    assert str(request.url) == WORKER_URL
    assert request.headers["x-doc-secret"] == DOC_SECRET
    assert json.loads(request.content) == {
        "token": "case_abc123",
        "storage_path": "pasted/case_abc123/pasted_text.txt",
        "filename": "pasted_text.txt",
        "mime_type": "text/plain",
    }

    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "queued"
    assert stored.payload["notice_storage_path"] == "pasted/case_abc123/pasted_text.txt"
    assert stored.payload["webhook_response"] == {"accepted": True, "job_id": "job_1"}
    assert stored.payload["extract_triggered_at"]
    assert stored.payload["extract_queued_at"]
    assert stored.payload["pastedText"] == "Notice text"


def test_dispatch_uses_handed_record_not_a_reread(dispatcher, repository, store, worker):
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})
    store.simulate_visibility_lag("case_abc123", reads=10)

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.QUEUED
    assert len(worker.requests) == 1


def test_non_pending_status_never_calls_worker(dispatcher, repository, worker):
    for status in ("triggered", "queued", "failed", None):
        payload = {"pastedText": "Notice text"}
        if status:
            payload["extract_status"] = status
        case = _save(repository, f"case_{status or 'absent'}", payload)
        assert asyncio.run(dispatcher.run_after_save(case)) is None

    assert worker.requests == []


def test_dispatch_delay_is_awaited(repository, settings, worker, sleeps):
    settings.extraction_dispatch_delay_seconds = 2.0
    dispatcher = ExtractionDispatcher(repository, settings, http_client=worker.client(), sleep=sleeps)
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    asyncio.run(dispatcher.run_after_save(case))

    assert sleeps.calls == [2.0]


def test_concurrent_dispatch_claims_once(dispatcher, repository, worker):
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    async def run():
        return await asyncio.gather(dispatcher.dispatch(case), dispatcher.dispatch(case))

    outcomes = asyncio.run(run())

    assert sum(1 for outcome in outcomes if outcome is not None) == 1
    assert len(worker.requests) == 1


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (401, ExtractStatus.AUTH_FAILED),
        (404, ExtractStatus.NOT_DEPLOYED),
        (500, ExtractStatus.FAILED),
    ],
)
def test_worker_rejections_are_recorded(dispatcher, repository, store, worker, status_code, expected):
    worker.status_code = status_code
    worker.body = "worker says no"
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == expected
    assert outcome.http_status == status_code
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == expected.value
    assert stored.payload["extract_error"].startswith(f"Webhook {status_code}")
    assert stored.payload["extract_failed_at"]


def test_long_worker_error_is_truncated(dispatcher, repository, store, worker, settings):
    worker.status_code = 500
    worker.body = "x" * 5000
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    asyncio.run(dispatcher.run_after_save(case))

    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert len(stored.payload["extract_error"]) == settings.extraction_error_excerpt_chars


def test_unreachable_worker_is_failed(dispatcher, repository, store, worker):
    worker.raise_error = httpx.ConnectError("connection refused")
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.FAILED
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "failed"
    assert "connection refused" in stored.payload["extract_error"]


def test_unconfigured_worker_is_recorded(repository, settings, worker, store):
    settings.extraction_webhook_url = None
    dispatcher = ExtractionDispatcher(repository, settings, http_client=worker.client())
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.NOT_CONFIGURED
    assert worker.requests == []
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "not_configured"


def test_dispatch_events_logged(dispatcher, repository, store):
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    asyncio.run(dispatcher.run_after_save(case))

    types = [e.type for e in asyncio.run(store.list_events("case_abc123"))]
    assert types == [
        CaseEventType.CASE_CREATED,
        CaseEventType.EXTRACTION_TRIGGERED,
        CaseEventType.EXTRACTION_FINISHED,
    ]


def test_run_after_save_never_raises(dispatcher, repository, store):
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    async def broken_merge(*args, **kwargs):
        raise ConnectionError("db down")

    store.merge_payload = broken_merge
    assert asyncio.run(dispatcher.run_after_save(case)) is None


# =============================================================================
# Explicit trigger
# =============================================================================

def test_trigger_runs_regardless_of_status(dispatcher, repository, store, worker):
    _save(repository, "case_abc123", {"extract_status": "failed"})

    outcome = asyncio.run(dispatcher.trigger(
        "case_abc123", "uploads/notice.pdf", filename="notice.pdf", mime_type="application/pdf",
    ))

    assert outcome.accepted
    assert json.loads(worker.requests[0].content)["storage_path"] == "uploads/notice.pdf"
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "queued"
    assert stored.payload["notice_filename"] == "notice.pdf"


def test_trigger_requires_token_and_path(dispatcher):
    with pytest.raises(MissingField):
        asyncio.run(dispatcher.trigger("case_abc123", "  "))
    with pytest.raises(MissingField):
        asyncio.run(dispatcher.trigger(None, "uploads/notice.pdf"))


def test_trigger_unknown_case(dispatcher, worker):
    with pytest.raises(CaseNotFound):
        asyncio.run(dispatcher.trigger("case_missing", "uploads/notice.pdf"))
    assert worker.requests == []


def test_malformed_worker_url_is_recorded_as_failed(dispatcher, repository, store, worker, settings):
    settings.extraction_webhook_url = "http://[::1/x"
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.FAILED
    assert worker.requests == []
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "failed"
    assert stored.payload["extract_error"].startswith("Webhook request")
    assert stored.payload["extract_failed_at"]


def test_unexpected_client_error_is_recorded_as_failed(dispatcher, repository, store, worker):
    worker.raise_error = RuntimeError("transport exploded")
    case = _save(repository, "case_abc123", {"pastedText": "Notice text", "extract_status": "pending"})

    outcome = asyncio.run(dispatcher.run_after_save(case))

    assert outcome.status == ExtractStatus.FAILED
    stored = asyncio.run(store.get_by_token("case_abc123"))
    assert stored.extract_status == "failed"
    assert "RuntimeError: transport exploded" in stored.payload["extract_error"]
