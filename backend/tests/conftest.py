"""Pytest configuration and shared fixtures."""

import base64
import os
from collections.abc import AsyncGenerator, Generator

# Settings are read at import time; configure the test environment first
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-length-0123456789"
os.environ["TOKEN_PEPPER"] = "test-pepper"
os.environ["PII_MASTER_KEY"] = base64.b64encode(b"k" * 32).decode("ascii")
os.environ["EMAIL_HASH_SALT"] = "test-email-salt"
os.environ["GOOGLE_CLIENT_ID"] = "web-client.apps.googleusercontent.com"
os.environ["GOOGLE_ANDROID_CLIENT_ID"] = "android-client.apps.googleusercontent.com"
os.environ["APPLE_CLIENT_ID"] = "com.example.healthapp"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from identity_service import models  # noqa: E402,F401
from identity_service.core.apple_keys import AppleKeyCache  # noqa: E402
from identity_service.core.dependencies import get_verifier_registry  # noqa: E402
from identity_service.core.encryption import CryptoEnvelope, build_crypto_envelope  # noqa: E402
from identity_service.core.oauth import (  # noqa: E402
    AppleVerifier,
    GoogleVerifier,
    VerifierRegistry,
)
from identity_service.core.config import settings  # noqa: E402
from identity_service.db.base import Base  # noqa: E402
from identity_service.db.engine import create_db_engine  # noqa: E402
from identity_service.db.session import get_db  # noqa: E402
from identity_service.main import create_app  # noqa: E402
from tests.helpers.apple import AppleSigningKey, jwks_transport  # noqa: E402
from tests.helpers.google import tokeninfo_transport  # noqa: E402

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    session = Session(bind=engine, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def crypto() -> CryptoEnvelope:
    return build_crypto_envelope(settings)


@pytest.fixture(scope="session")
def apple_key() -> AppleSigningKey:
    """RSA key pair standing in for one of Apple's signing keys."""
    return AppleSigningKey(kid="apple-test-kid")


@pytest.fixture
def apple_key_cache(apple_key) -> AppleKeyCache:
    return AppleKeyCache(settings.APPLE_KEYS_URL, transport=jwks_transport(apple_key.jwk))


@pytest.fixture
def google_tokens() -> dict[str, dict]:
    """Tokeninfo payloads keyed by ID token; unknown tokens are rejected by Google."""
    return {}


@pytest.fixture
def verifiers(apple_key_cache, google_tokens) -> VerifierRegistry:
    return VerifierRegistry(
        [
            GoogleVerifier(
                client_ids=settings.google_client_ids,
                tokeninfo_url=settings.GOOGLE_TOKENINFO_URL,
                transport=tokeninfo_transport(google_tokens),
            ),
            AppleVerifier(
                client_id=settings.APPLE_CLIENT_ID,
                key_cache=apple_key_cache,
                issuer=settings.APPLE_ISSUER,
            ),
        ]
    )


@pytest.fixture
async def async_client(db: Session, verifiers: VerifierRegistry) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async API client with database and provider dependencies overridden."""
    test_app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close the session, it's managed by the db fixture

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_verifier_registry] = lambda: verifiers

    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    test_app.dependency_overrides.clear()
