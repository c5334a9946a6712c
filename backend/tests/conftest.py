"""Pytest fixtures for backend tests."""

import os

# Cheap hashing for the suite. Must be set before settings are imported.
os.environ["CODE_HASH_ROUNDS"] = "4"
os.environ["ARGON2_TIME_COST"] = "1"
os.environ["ARGON2_MEMORY_COST"] = "1024"
os.environ["ARGON2_PARALLELISM"] = "1"
os.environ["EMAIL_PROVIDER"] = "log"
os.environ["DATABASE_AUTO_CREATE"] = "false"

import re
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from onboarding_auth.api.deps import get_current_identity_id, get_notifier, get_store
from onboarding_auth.main import app
from onboarding_auth.repositories.base import Identity
from onboarding_auth.repositories.memory import InMemoryCredentialStore
from onboarding_auth.services.auth import AuthService
from onboarding_auth.services.notification import EmailMessage, NotificationDispatcher

TEST_EMAIL = "a@x.com"
TEST_PASSWORD = "Correct1!"


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Notification sender that keeps every message in memory."""

    def __init__(self):
        self.messages: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.messages.append(message)

    def last_code(self) -> str:
        for message in reversed(self.messages):
            match = re.search(r"verification code is (\d+)", message.text)
            if match:
                return match.group(1)
        raise AssertionError("No verification code was sent")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def notifier(sender: RecordingSender) -> NotificationDispatcher:
    return NotificationDispatcher(sender, timeout=1.0)


@pytest.fixture
def auth_service(store, notifier, clock) -> AuthService:
    return AuthService(store, notifier, clock=clock)


@pytest_asyncio.fixture
async def identity(auth_service: AuthService) -> Identity:
    """Registered account with no MFA policy requirement."""
    return await auth_service.register(TEST_EMAIL, TEST_PASSWORD, mfa_required=False)


@pytest_asyncio.fixture
async def client(store, notifier) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated test client backed by the in-memory store."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def authenticated_client(client: AsyncClient, identity: Identity) -> AsyncClient:
    """Client whose requests carry the principal the session layer would set."""
    app.dependency_overrides[get_current_identity_id] = lambda: identity.id
    return client