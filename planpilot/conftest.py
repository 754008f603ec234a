# planpilot/conftest.py
import pytest
from fastapi.testclient import TestClient

from planpilot.core.config import Settings
from planpilot.core.ratelimit import InMemoryRequestLogStore, SlidingWindowRateLimiter
from planpilot.features.billing.paypal import PayPalClient
from planpilot.features.generation.service import GenerationService
from planpilot.features.subscriptions.service import SubscriptionStore
from planpilot.tests.mocks import FakeGroq


class FakeClock:
    """Millisecond clock tests can move by hand."""

    def __init__(self, start: int = 0):
        self.current = start

    def advance(self, ms: int):
        self.current += ms

    def set(self, ms: int):
        self.current = ms

    def __call__(self) -> int:
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_store():
    """Fresh request log store per test."""
    return InMemoryRequestLogStore()


@pytest.fixture
def limiter(log_store, clock):
    return SlidingWindowRateLimiter(log_store, time_fn=clock)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        CLERK_SECRET_KEY=None,
        CLERK_ISSUER=None,
        CLERK_JWKS_URL=None,
        PAYPAL_CLIENT_ID=None,
        PAYPAL_CLIENT_SECRET=None,
        PAYPAL_WEBHOOK_ID=None,
        GROQ_API_KEY=None,
        RATE_LIMIT_BACKEND="memory",
        PAYMENT_RATE_LIMIT_MAX=3,
        PAYMENT_RATE_LIMIT_WINDOW_MS=60000,
        GENERATION_RATE_LIMIT_MAX=5,
        GENERATION_RATE_LIMIT_WINDOW_MS=60000,
        PLAN_CATALOG_PATH=None,
    )


@pytest.fixture
def subscriptions():
    return SubscriptionStore()


@pytest.fixture
def fake_groq():
    return FakeGroq()


@pytest.fixture
def generation_service(fake_groq):
    return GenerationService(api_key=None, model="test-model", client=fake_groq)


@pytest.fixture
def payment_client():
    # No credentials: mock mode, no network.
    return PayPalClient()


@pytest.fixture
def app(test_settings, log_store, clock, subscriptions, payment_client, generation_service):
    from planpilot.main import create_app

    return create_app(
        test_settings,
        store=log_store,
        time_fn=clock,
        subscriptions=subscriptions,
        payment_client=payment_client,
        generation_service=generation_service,
    )


@pytest.fixture
def client(app):
    # Context manager runs the lifespan (limiter, sweeper).
    with TestClient(app) as test_client:
        yield test_client
