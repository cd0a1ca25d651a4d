# api/server.py
# ============================================================================
# CASE LIFECYCLE SERVICE - FASTAPI SERVER
# ============================================================================
# HTTP surface for the case lifecycle: save/read cases, start checkout,
# receive Stripe webhooks and trigger document extraction.
# ============================================================================

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import stripe
import structlog
import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from database import CaseStore, create_store
from errors import CaseServiceError, GatewayNotConfigured, InvalidFormat, InvalidSecret, MissingField
from pipeline.checkout_sessions import CheckoutSessionBuilder
from pipeline.extraction_dispatcher import SECRET_HEADER, ExtractionDispatcher
from pipeline.payment_events import PaymentEventProcessor
from schemas.case_definitions import (
    CaseProjection,
    CheckoutRequest,
    CheckoutResponse,
    ExtractionReport,
    ExtractStatus,
    ReadCaseRequest,
    SaveCaseRequest,
    SaveCaseResponse,
    TriggerExtractionRequest,
)
from services.case_repository import CaseRepository, project_case
from settings import Settings
from tasks.extraction_monitor import get_extraction_report

VERSION = "1.0.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": f"authorization, x-client-info, apikey, content-type, {SECRET_HEADER}",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


def configure_logging(settings: Settings) -> None:
    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


logger = structlog.get_logger().bind(component="server")


def _secret_matches(presented: Optional[str], expected: str) -> bool:
    presented = (presented or "").strip()
    if not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CaseStore] = None,
    stripe_client=stripe,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    store = store or create_store(settings)

    repository = CaseRepository(store, settings, sleep=sleep)
    dispatcher = ExtractionDispatcher(repository, settings, http_client=http_client, sleep=sleep)
    payments = PaymentEventProcessor(store, settings)
    checkout = CheckoutSessionBuilder(repository, settings, stripe_client=stripe_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("service_starting", version=VERSION, env=settings.env)
        await store.initialize()
        yield
        await store.close()
        logger.info("service_stopped")

    app = FastAPI(
        title="Case Lifecycle Service",
        description="Case intake, paid unlock and document extraction orchestration",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.repository = repository
    app.state.dispatcher = dispatcher
    app.state.payments = payments
    app.state.checkout = checkout
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # Middleware / error mapping
    # ------------------------------------------------------------------------

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(CaseServiceError)
    async def handle_case_error(request: Request, exc: CaseServiceError):
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.http_status, headers=CORS_HEADERS)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"error": "Invalid request body", "code": "INVALID_INPUT"},
            status_code=400,
            headers=CORS_HEADERS,
        )

    @app.options("/{path:path}")
    async def preflight(path: str):
        return Response(status_code=200, headers=CORS_HEADERS)

    # ------------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": round(time.time() - app.state.started_at, 2),
            "store": type(store).__name__,
            "extraction_configured": settings.extraction_configured,
            "checkout_configured": settings.checkout_configured,
        }

    # ------------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------------

    @app.post("/api/v1/save-case", response_model=SaveCaseResponse)
    async def save_case(body: SaveCaseRequest, background_tasks: BackgroundTasks):
        """
        Create or merge a case.

        Extraction (when the payload asks for it) is scheduled after the
        response with the record this save wrote.
        """
        if not body.token or body.payload is None:
            raise MissingField("Token and payload are required")

        result = await repository.save_case(body.token, body.payload)
        background_tasks.add_task(dispatcher.run_after_save, result.case)

        return SaveCaseResponse(success=True, case_id=result.case.id)

    @app.get("/api/v1/read-case", response_model=CaseProjection)
    async def read_case_get(token: Optional[str] = None):
        case = await repository.get_case(token)
        return project_case(case)

    @app.post("/api/v1/read-case", response_model=CaseProjection)
    async def read_case_post(body: ReadCaseRequest):
        case = await repository.get_case(body.token)
        return project_case(case)

    # ------------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------------

    @app.post("/api/v1/create-checkout-session", response_model=CheckoutResponse)
    async def create_checkout_session(body: CheckoutRequest):
        url = await checkout.create_session(body.token, body.email, body.payload)
        return CheckoutResponse(url=url)

    @app.post("/api/v1/stripe-webhook")
    async def stripe_webhook(request: Request):
        raw = await request.body()
        await payments.process(raw, request.headers.get("stripe-signature"))
        return PlainTextResponse("OK", status_code=200)

    # ------------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------------

    def _require_secret(request: Request) -> None:
        expected = settings.extraction_webhook_secret
        if not expected:
            raise GatewayNotConfigured("Extraction secret is not configured")
        if not _secret_matches(request.headers.get(SECRET_HEADER), expected):
            logger.warning("extraction_secret_mismatch", path=request.url.path)
            raise InvalidSecret("Unauthorized")

    @app.post("/api/v1/doc-extract-start")
    async def doc_extract_start(request: Request):
        _require_secret(request)

        try:
            body: Dict[str, Any] = await request.json()
        except ValueError:
            raise InvalidFormat("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidFormat("Request body must be an object")
        try:
            trigger_request = TriggerExtractionRequest.model_validate(body)
        except ValidationError:
            raise InvalidFormat("Request body fields must be strings")

        outcome = await dispatcher.trigger(
            trigger_request.token,
            trigger_request.storage_path,
            filename=trigger_request.filename,
            mime_type=trigger_request.mime_type,
        )

        if outcome.accepted:
            return {
                "ok": True,
                "token": outcome.token,
                "storage_path": outcome.document.storage_path,
                "webhook": outcome.worker_response or {},
            }

        status_code = 503 if outcome.status == ExtractStatus.NOT_CONFIGURED else 502
        return JSONResponse(
            {
                "error": "Webhook call failed",
                "extract_status": outcome.status.value,
                "details": outcome.error,
            },
            status_code=status_code,
            headers=CORS_HEADERS,
        )

    @app.get("/api/v1/admin/extractions/stalled", response_model=ExtractionReport)
    async def stalled_extractions(request: Request):
        _require_secret(request)
        return await get_extraction_report(store, settings)

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    settings = app.state.settings
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.is_development,
        log_level="info",
    )
