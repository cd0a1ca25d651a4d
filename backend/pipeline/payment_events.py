"""
Payment Event Processor
=======================
Turns signed Stripe webhook events into case transitions.

- Signature verified BEFORE the body is parsed
- Webhook Router: one handler per event type, unknown types acknowledged
  and ignored
- checkout.session.completed flips the case to paid/unlocked and records
  the gateway identifiers on the case itself
- Redelivered events (same Stripe event id) are skipped; the event log's
  unique external_id backs this under concurrent delivery
- A payment that matches no case is never dropped silently

pip install stripe structlog
"""

import json
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog

from database import CaseStore
from errors import (
    CaseNotFound,
    InvalidFormat,
    MissingCorrelation,
    StoreFailure,
    UnauthorizedWebhook,
)
from schemas.case_definitions import CaseEventType, CaseStatus
from services.case_repository import normalize_token
from services.event_log import log_event
from settings import Settings

CHECKOUT_COMPLETED = "checkout.session.completed"

WebhookHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """Maps Stripe event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            return handler
        return decorator

    async def route(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("webhook_ignored", event_type=event_type)
            return None

        return await handler(event)

    @property
    def supported_events(self) -> list:
        return list(self._handlers.keys())


# =============================================================================
# PROCESSOR
# =============================================================================

def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class PaymentEventProcessor:
    """
    Example:
        processor = PaymentEventProcessor(store, settings)
        result = await processor.process(raw_body, request.headers.get("stripe-signature"))
    """

    def __init__(self, store: CaseStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.router = WebhookRouter()
        self._register_handlers()
        self._logger = structlog.get_logger().bind(component="payment_events")

    def _register_handlers(self):
        @self.router.register(CHECKOUT_COMPLETED)
        async def handle_checkout_completed(event: Dict[str, Any]):
            return await self._on_checkout_completed(event)

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the stripe-signature header and return the parsed event."""
        if not signature:
            self._logger.warning("webhook_signature_missing")
            raise UnauthorizedWebhook("No Stripe signature found")

        secret = self.settings.stripe_webhook_secret
        if not secret:
            self._logger.error("webhook_secret_not_configured")
            raise UnauthorizedWebhook("Webhook secret not configured")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidFormat("Webhook body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(text, signature, secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise UnauthorizedWebhook("Invalid webhook signature")

        try:
            event = json.loads(text)
        except ValueError:
            raise InvalidFormat("Webhook body is not valid JSON")

        if not isinstance(event, dict):
            raise InvalidFormat("Webhook body is not an event object")
        return event

    async def process(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, signature)

        event_type = event.get("type", "unknown")
        event_id = event.get("id")
        self._logger.info("webhook_received", event_type=event_type, stripe_event_id=event_id)

        result = await self.router.route(event)
        if result is None:
            return {"status": "ignored", "event_type": event_type}
        return result

    async def _on_checkout_completed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        session = (event.get("data") or {}).get("object") or {}
        event_id = event.get("id")

        metadata = session.get("metadata") or {}
        token = normalize_token(session.get("client_reference_id") or metadata.get("token"))
        if not token:
            self._logger.error("checkout_completed_without_token", stripe_event_id=event_id)
            raise MissingCorrelation("No token found")

        log = self._logger.bind(token=token[:16], stripe_event_id=event_id)

        if event_id and await self.store.has_event(event_id):
            log.info("payment_redelivery_skipped")
            return {"status": "duplicate", "token": token}

        payment_intent_id = _object_id(session.get("payment_intent"))
        try:
            case = await self.store.update_fields(
                token,
                status=CaseStatus.PAID,
                unlocked=True,
                stripe_checkout_session_id=session.get("id"),
                stripe_payment_intent_id=payment_intent_id,
                amount_total=session.get("amount_total"),
                currency=session.get("currency"),
            )
        except Exception as e:
            log.error("payment_update_failed", error=str(e))
            raise StoreFailure("Failed to update case") from e

        if case is None:
            log.critical("payment_orphaned", session_id=session.get("id"))
            await log_event(
                self.store,
                token,
                CaseEventType.PAYMENT_ORPHANED,
                {
                    "session_id": session.get("id"),
                    "payment_intent_id": payment_intent_id,
                    "amount_total": session.get("amount_total"),
                    "currency": session.get("currency"),
                },
                severity="critical",
            )
            raise CaseNotFound("Case not found for completed payment", details={"token": token})

        await log_event(
            self.store,
            token,
            CaseEventType.PAYMENT_COMPLETED,
            {
                "session_id": session.get("id"),
                "payment_intent_id": payment_intent_id,
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "customer_email": session.get("customer_email"),
            },
            external_id=event_id,
        )

        log.info("payment_processed", amount_total=session.get("amount_total"))
        return {"status": "processed", "token": token}
