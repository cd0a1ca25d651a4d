import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from database import InMemoryCaseStore
from services.case_repository import CaseRepository
from settings import Settings

WEBHOOK_SECRET = "whsec_test_secret"
DOC_SECRET = "doc-secret-123"
WORKER_URL = "https://worker.example.com/extract"


def sign_stripe_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a stripe-signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(
    token: str = "case_abc123",
    event_id: str = "evt_test_1",
    use_metadata: bool = False,
    **session_overrides,
) -> str:
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "client_reference_id": None if use_metadata else token,
        "metadata": {"token": token} if use_metadata else {},
        "payment_intent": "pi_test_1",
        "amount_total": 4900,
        "currency": "usd",
        "customer_email": "jane@example.com",
    }
    session.update(session_overrides)
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": session},
    })


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeStripe:
    """Stand-in for the stripe module's checkout.Session.create."""

    def __init__(self):
        self.created = []
        self.error = None
        outer = self

        class _Session:
            @staticmethod
            def create(**kwargs):
                if outer.error is not None:
                    raise outer.error
                outer.created.append(kwargs)
                return SimpleNamespace(
                    id=f"cs_test_{len(outer.created)}",
                    url=f"https://checkout.stripe.com/c/pay/cs_test_{len(outer.created)}",
                    amount_total=4900,
                    currency="usd",
                )

        self.checkout = SimpleNamespace(Session=_Session)


class FakeWorker:
    """Extraction worker behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.status_code = 202
        self.body = {"accepted": True, "job_id": "job_1"}
        self.raise_error = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.raise_error is not None:
            raise self.raise_error
        self.requests.append(request)
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(self.status_code, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_test_123",
        site_url="https://cases.example.com",
        extraction_webhook_url=WORKER_URL,
        extraction_webhook_secret=DOC_SECRET,
        extraction_dispatch_delay_seconds=0,
        lookup_max_retries=3,
        lookup_retry_delay_seconds=1.0,
    )


@pytest.fixture
def store() -> InMemoryCaseStore:
    return InMemoryCaseStore()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def repository(store, settings, sleeps) -> CaseRepository:
    return CaseRepository(store, settings, sleep=sleeps)


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def client(settings, store, fake_stripe, worker, sleeps):
    app = create_app(
        settings=settings,
        store=store,
        stripe_client=fake_stripe,
        http_client=worker.client(),
        sleep=sleeps,
    )
    with TestClient(app) as test_client:
        yield test_client
