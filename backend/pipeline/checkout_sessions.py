"""
Checkout Session Builder
========================
Starts the hosted Stripe checkout for an existing case.

- Validates token + contact email
- Never creates a gateway session for an unknown or already paid case
- Moves the case to pending_payment and records the contact email
- One line item at the configured price, 30-minute expiry
- Token carried as client_reference_id AND metadata so the webhook can
  correlate the completed payment back to the case

pip install stripe structlog
"""

import re
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote

import stripe
import structlog

from errors import (
    AlreadyPaid,
    GatewayNotConfigured,
    InvalidFormat,
    MissingField,
    StoreFailure,
    UpstreamFailure,
)
from schemas.case_definitions import CaseEventType, CaseStatus, utcnow
from services.case_repository import CaseRepository, normalize_token
from services.event_log import log_event
from settings import Settings

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CheckoutSessionBuilder:
    """
    Example:
        builder = CheckoutSessionBuilder(repository, settings)
        url = await builder.create_session("case_abc123", "jane@example.com")
    """

    def __init__(self, repository: CaseRepository, settings: Settings, stripe_client=stripe):
        self.repository = repository
        self.settings = settings
        self._stripe = stripe_client
        self._logger = structlog.get_logger().bind(component="checkout_sessions")

    def _validate(self, token: Any, email: Any) -> tuple:
        token = normalize_token(token)
        email = str(email).strip() if email is not None else ""

        if not token or not email:
            raise MissingField("Token and email are required")
        if not EMAIL_PATTERN.match(email):
            raise InvalidFormat("Invalid email format")
        return token, email

    def _redirect_urls(self, token: str) -> Dict[str, str]:
        site = self.settings.site_url.rstrip("/")
        quoted = quote(token, safe="")
        return {
            "success_url": f"{site}/case.html?case={quoted}&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{site}/case-preview.html?case={quoted}",
        }

    async def create_session(
        self,
        token: Any,
        email: Any,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a Stripe Checkout Session for the case.

        Returns:
            The hosted checkout URL

        Raises:
            MissingField / InvalidFormat: bad input
            CaseNotFound: no case for token
            AlreadyPaid: case is already paid or unlocked
            GatewayNotConfigured: Stripe key, price or site URL missing
            UpstreamFailure: Stripe rejected the session
        """
        token, email = self._validate(token, email)
        if payload is not None and not isinstance(payload, dict):
            raise InvalidFormat("Payload must be an object")

        case = await self.repository.get_case(token)
        log = self._logger.bind(token=token[:16], case_id=case.id[:8])

        if case.status == CaseStatus.PAID or case.unlocked:
            log.info("checkout_refused_already_paid", status=case.status.value)
            raise AlreadyPaid("Case is already paid", details={"token": token})

        if not self.settings.checkout_configured:
            log.error("checkout_not_configured")
            raise GatewayNotConfigured("Payment gateway is not configured")

        try:
            updated = await self.repository.store.update_fields(
                token,
                email=email,
                status=CaseStatus.PENDING_PAYMENT,
            )
            if payload:
                await self.repository.store.merge_payload(token, payload)
        except Exception as e:
            log.error("checkout_case_update_failed", error=str(e))
            raise StoreFailure("Failed to update case") from e

        if updated is None:
            log.error("checkout_case_update_missed")
            raise StoreFailure("Failed to update case")

        expires_at = utcnow() + timedelta(minutes=self.settings.checkout_expiry_minutes)

        try:
            session = self._stripe.checkout.Session.create(
                api_key=self.settings.stripe_secret_key,
                mode="payment",
                line_items=[{"price": self.settings.stripe_price_id, "quantity": 1}],
                client_reference_id=token,
                customer_email=email,
                metadata={
                    "token": token,
                    "source": self.settings.checkout_source,
                },
                expires_at=int(expires_at.timestamp()),
                **self._redirect_urls(token),
            )
        except stripe.StripeError as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise UpstreamFailure("Failed to create checkout session", details={"gateway_error": str(e)}) from e

        await log_event(
            self.repository.store,
            token,
            CaseEventType.CHECKOUT_SESSION_CREATED,
            {
                "session_id": session.id,
                "email": email,
                "amount": getattr(session, "amount_total", None),
                "currency": getattr(session, "currency", None),
            },
        )

        log.info("checkout_created", stripe_session_id=session.id, expires_at=expires_at.isoformat())
        return session.url
