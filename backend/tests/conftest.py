"""Shared fixtures: in-memory SQLite storage, port fakes, API client.

Storage-level guarantees (conditional updates, unique and check
constraints) are exercised against a real database engine; only the
external collaborators are faked.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

import httpx
import jwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import Services, build_services
from app.config import settings
from app.database import build_sessionmaker
from app.errors import PaymentError
from app.models.contracts import (
    CheckoutSession,
    Generation,
    PaymentEvent,
    PaymentSession,
    ProviderUpdate,
)
from app.models.db import Base
from app.providers.fal import FalInferenceProvider
from app.services.generations import transition_in

JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
WEBHOOK_TOKEN = "provider-token"
VALID_SIGNATURE = "sig-valid"


class FakeInference:
    """Records submissions; statuses are scripted per job id."""

    def __init__(self) -> None:
        self.submitted: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.statuses: dict[str, ProviderUpdate] = {}
        self.submit_error: Exception | None = None
        self.poll_error: Exception | None = None
        self.poll_count = 0
        self._parser = FalInferenceProvider(api_key="test-key")

    async def submit(
        self,
        *,
        prompt: str,
        image_url: str,
        transform_mode: str,
        webhook_url: str | None = None,
    ) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        job_id = f"job-{len(self.submitted) + 1}"
        self.submitted.append(
            {
                "job_id": job_id,
                "prompt": prompt,
                "image_url": image_url,
                "transform_mode": transform_mode,
                "webhook_url": webhook_url,
            }
        )
        return job_id

    async def check_status(self, job_id: str) -> ProviderUpdate:
        self.poll_count += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.statuses.get(job_id, ProviderUpdate(job_id=job_id, status="processing"))

    async def cancel(self, job_id: str) -> None:
        self.cancelled.append(job_id)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderUpdate:
        return self._parser.parse_webhook(payload)


class FakeStorage:
    """Dict-backed object store."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.copies: list[tuple[str, str]] = []
        self.upload_error: Exception | None = None

    async def upload_from_url(self, url: str, key: str) -> str:
        if self.upload_error is not None:
            raise self.upload_error
        self.copies.append((url, key))
        self.objects[key] = url.encode()
        return key

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        if self.upload_error is not None:
            raise self.upload_error
        self.objects[key] = data
        return key

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def signed_url(self, key_or_url: str) -> str:
        if key_or_url.startswith(("http://", "https://")):
            return key_or_url
        return f"https://signed.example.com/{key_or_url}?sig=abc"


class FakePayments:
    """Checkout sessions held in memory; webhook signature is a fixed token."""

    def __init__(self) -> None:
        self.sessions: dict[str, PaymentSession] = {}
        self.checkouts: list[dict[str, Any]] = []

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session_id = f"cs_test_{len(self.checkouts) + 1}"
        self.checkouts.append(
            {
                "session_id": session_id,
                "price_id": price_id,
                "customer_email": customer_email,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        self.sessions[session_id] = PaymentSession(
            session_id=session_id, payment_status="unpaid", metadata=metadata
        )
        return CheckoutSession(session_id=session_id, url=f"https://checkout.example.com/{session_id}")

    async def retrieve_session(self, session_id: str) -> PaymentSession:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise PaymentError("Checkout session not found") from None

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        if signature != VALID_SIGNATURE:
            raise PaymentError("Invalid webhook signature")
        event = json.loads(payload)
        obj = event["data"]["object"]
        return PaymentEvent(
            event_id=event["id"],
            type=event["type"],
            session_id=obj.get("id"),
            payment_status=obj.get("payment_status"),
            metadata=obj.get("metadata") or {},
        )


def stripe_event(
    event_id: str,
    session_id: str,
    metadata: dict[str, str],
    *,
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": payment_status,
                    "metadata": metadata,
                }
            },
        }
    ).encode()


def make_token(user_id: str, email: str | None = None, *, expires_in: int = 3600) -> str:
    now = int(time.time())
    return jwt.encode(
        {
            "sub": user_id,
            "email": email or f"{user_id}@example.com",
            "aud": settings.auth_jwt_audience,
            "iat": now,
            "exp": now + expires_in,
        },
        JWT_SECRET,
        algorithm="HS256",
    )


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Pin secrets the HTTP layer checks."""
    monkeypatch.setattr(settings, "auth_jwt_secret", JWT_SECRET)
    monkeypatch.setattr(settings, "provider_webhook_secret", WEBHOOK_TOKEN)
    monkeypatch.setattr(settings, "stripe_price_hd_unlock", "price_hd")
    monkeypatch.setattr(settings, "stripe_price_pack_25", "price_pack_25")


@pytest.fixture
async def sessions():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def services(sessions, inference, storage, payments) -> Services:
    return build_services(sessions, inference=inference, storage=storage, payments=payments)


async def create_user(services: Services, user_id: str = "user-1", balance: int = 3) -> str:
    """Open an account (signup bonus 3) and move it to `balance` via the ledger."""
    (await services.ledger.open_account(user_id, f"{user_id}@example.com")).unwrap()
    delta = balance - settings.signup_bonus_credits
    if delta > 0:
        (await services.ledger.credit(user_id, delta, "test top-up")).unwrap()
    elif delta < 0:
        (await services.ledger.debit(user_id, -delta, "test spend")).unwrap()
    return user_id


async def completed_generation(services: Services, sessions, user_id: str) -> Generation:
    """A finished generation with an output in storage, without a charge."""
    generation = await services.store.create(
        user_id=user_id,
        style_slug="moderne",
        room_type="salon",
        transform_mode="full_redesign",
        input_image_ref=f"users/{user_id}/uploads/photo.jpg",
        prompt="prompt",
    )
    async with sessions.begin() as session:
        done = await transition_in(
            session,
            generation.id,
            "completed",
            output_image_ref=f"users/{user_id}/generations/{generation.id}.jpg",
        )
    assert done is not None
    return done


@pytest.fixture
async def client(services):
    from app.main import app

    app.state.services = services
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
    app.state.services = None


def auth_headers(user_id: str = "user-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def new_id() -> str:
    return str(uuid.uuid4())
