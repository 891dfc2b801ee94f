"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from contextlib import ExitStack
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tests.fakes import SIGNING_KEY_JWK, FakeBillingClient, FakeSupabase

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ["SUPABASE_SIGNING_KEY_JWK"] = SIGNING_KEY_JWK
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_stripe_publishable_key")

# Modules that resolve the Supabase client through get_supabase_client
SUPABASE_CONSUMERS = (
    "src.core.supabase",
    "src.services.catalog_service",
    "src.services.cart_service",
    "src.services.order_service",
    "src.services.checkout_service",
    "src.services.completion_service",
)

# Modules that construct a BillingClient
BILLING_CONSUMERS = (
    "src.services.checkout_service",
    "src.services.completion_service",
)


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_process_state() -> Generator[None, None, None]:
    """Give each test a fresh rate limiter, lock registry and billing breaker."""
    import src.core.locks as locks
    import src.core.rate_limiter as rate_limiter
    import src.core.resilience as resilience

    rate_limiter._rate_limiter = None
    locks._owner_locks = None
    resilience._billing_breaker = None
    yield
    rate_limiter._rate_limiter = None
    locks._owner_locks = None
    resilience._billing_breaker = None


@pytest.fixture
def fake_db() -> FakeSupabase:
    """Provide an empty in-memory database."""
    return FakeSupabase()


@pytest.fixture
def fake_billing() -> FakeBillingClient:
    """Provide a recording billing client."""
    return FakeBillingClient()


@pytest.fixture
def mock_backends(fake_db: FakeSupabase, fake_billing: FakeBillingClient) -> Generator[None, None, None]:
    """Route every service's Supabase and billing access to the fakes."""
    with ExitStack() as stack:
        for module in SUPABASE_CONSUMERS:
            stack.enter_context(patch(f"{module}.get_supabase_client", return_value=fake_db))
        for module in BILLING_CONSUMERS:
            stack.enter_context(patch(f"{module}.BillingClient", return_value=fake_billing))
        yield


@pytest.fixture
def client(mock_backends: None) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application backed by the fakes.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
