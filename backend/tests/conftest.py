"""Pytest configuration and fixtures for the API."""

import os
import secrets
import time

import pytest

# Unique signing secret per run so tokens cannot be replayed elsewhere
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", _TEST_JWT_SECRET)

from app.config import get_settings  # noqa: E402
from app.database import get_escrow_service  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from sogolo.escrow.files import InMemoryObjectStore  # noqa: E402
from sogolo.escrow.service import EscrowService  # noqa: E402
from sogolo.escrow.storage import InMemoryTransactionStorage  # noqa: E402


def make_token(
    sub: str,
    role: str | None = None,
    kyc_status: str | None = None,
    expires_in: int = 3600,
    secret: str | None = None,
    audience: str = "authenticated",
) -> str:
    """Mint a token shaped like a Supabase Auth access token."""
    settings = get_settings()
    app_metadata = {"provider": "email"}
    if role:
        app_metadata["role"] = role
    if kyc_status:
        app_metadata["kyc_status"] = kyc_status
    now = int(time.time())
    claims = {
        "sub": sub,
        "aud": audience,
        "role": "authenticated",
        "iat": now,
        "exp": now + expires_in,
        "app_metadata": app_metadata,
    }
    return jwt.encode(
        claims, secret or settings.supabase_jwt_secret, algorithm=settings.jwt_algorithm
    )


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def escrow_service():
    """In-memory engine injected in place of the Supabase-backed one."""
    return EscrowService(InMemoryTransactionStorage(), InMemoryObjectStore())


@pytest.fixture
def client(escrow_service):
    """Create a test client with the in-memory engine and no rate limits."""
    app.dependency_overrides[get_escrow_service] = lambda: escrow_service
    limiter.enabled = False
    with TestClient(app) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def buyer_headers():
    return bearer(make_token("buyer1"))


@pytest.fixture
def seller_headers():
    return bearer(make_token("seller1", kyc_status="approved"))


@pytest.fixture
def admin_headers():
    return bearer(make_token("admin1", role="admin"))


@pytest.fixture
def stranger_headers():
    return bearer(make_token("stranger1"))


@pytest.fixture
def token_factory():
    return make_token
