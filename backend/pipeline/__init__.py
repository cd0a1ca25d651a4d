# Pipeline - Case Lifecycle Stages
# ================================
# Payment events, checkout sessions and extraction dispatch

from .checkout_sessions import CheckoutSessionBuilder
from .extraction_dispatcher import (
    ExtractionDispatcher,
    derive_document,
    needs_extraction,
)
from .payment_events import PaymentEventProcessor, WebhookRouter

__all__ = [
    "CheckoutSessionBuilder",
    "ExtractionDispatcher",
    "derive_document",
    "needs_extraction",
    "PaymentEventProcessor",
    "WebhookRouter",
]
