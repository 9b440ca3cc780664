"""FastAPI dependencies: service wiring and caller identity.

Services are built once per process and cached on `app.state`; tests
replace `app.state.services` with a container wired to fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.database import SessionFactory, get_sessionmaker
from app.errors import AuthenticationError
from app.models.contracts import AuthenticatedUser
from app.services.generations import GenerationStore
from app.services.hd_unlock import HDUnlockGate
from app.services.ledger import CreditLedger
from app.services.orchestrator import GenerationOrchestrator
from app.services.payments import CreditCheckout, PaymentWebhookProcessor
from app.services.ports import AssetStorage, InferenceProvider, PaymentGateway
from app.services.reconciler import StatusReconciler

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    ledger: CreditLedger
    store: GenerationStore
    reconciler: StatusReconciler
    orchestrator: GenerationOrchestrator
    hd_gate: HDUnlockGate
    webhooks: PaymentWebhookProcessor
    credit_checkout: CreditCheckout
    storage: AssetStorage


def build_services(
    sessions: SessionFactory | None = None,
    *,
    inference: InferenceProvider | None = None,
    storage: AssetStorage | None = None,
    payments: PaymentGateway | None = None,
) -> Services:
    """Wire the services; any adapter left as None gets the production one."""
    if inference is None:
        from app.providers.fal import FalInferenceProvider

        inference = FalInferenceProvider()
    if storage is None:
        from app.utils.r2 import R2Storage

        storage = R2Storage()
    if payments is None:
        from app.providers.stripe_gateway import StripeGateway

        payments = StripeGateway()
    sessions = sessions or get_sessionmaker()

    ledger = CreditLedger(sessions)
    store = GenerationStore(sessions)
    reconciler = StatusReconciler(sessions, store, storage, inference)
    hd_gate = HDUnlockGate(sessions, store, payments, storage)
    return Services(
        ledger=ledger,
        store=store,
        reconciler=reconciler,
        orchestrator=GenerationOrchestrator(sessions, store, reconciler, inference, storage),
        hd_gate=hd_gate,
        webhooks=PaymentWebhookProcessor(sessions, ledger, hd_gate, payments),
        credit_checkout=CreditCheckout(payments),
        storage=storage,
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def decode_token(token: str) -> AuthenticatedUser:
    """Verify an HS256 access token and extract the subject and email."""
    if not settings.auth_jwt_secret:
        raise AuthenticationError("Authentication is not configured")
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.auth_jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired, please sign in again") from None
    except jwt.InvalidTokenError as exc:
        logger.info("auth_token_rejected", error=str(exc))
        raise AuthenticationError("Invalid access token") from None

    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise AuthenticationError("Invalid token payload")
    return AuthenticatedUser(id=subject, email=payload.get("email") or "")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    services: Services = Depends(get_services),
) -> AuthenticatedUser:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    user = decode_token(credentials.credentials.strip())
    # First authenticated request creates the account and grants the bonus
    (await services.ledger.open_account(user.id, user.email)).unwrap()
    structlog.contextvars.bind_contextvars(user_id=user.id)
    return user
