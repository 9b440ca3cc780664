"""Payment webhook processing and credit pack checkout.

A Stripe event is applied at most once: its id is recorded in
`payment_events` after the side effect commits, and the side effects are
idempotent on their own (credits keyed by checkout session id, HD flag
conditional). An event whose application fails is left unrecorded so
Stripe's redelivery retries it.
"""

from __future__ import annotations

import structlog
from sqlalchemy.exc import IntegrityError

from app.catalog import CATALOG, Catalog
from app.config import settings
from app.database import SessionFactory
from app.errors import PaymentError, returns_result
from app.models.contracts import CheckoutSession, PaymentEvent, PaymentSession, WebhookOutcome
from app.models.db import PaymentEventRow
from app.services.hd_unlock import HDUnlockGate
from app.services.ledger import CreditLedger
from app.services.ports import PaymentGateway

logger = structlog.get_logger()

CREDITS_PURCHASE_TYPE = "credits_purchase"

HANDLED_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


class PaymentWebhookProcessor:
    def __init__(
        self,
        sessions: SessionFactory,
        ledger: CreditLedger,
        gate: HDUnlockGate,
        payments: PaymentGateway,
    ) -> None:
        self._sessions = sessions
        self._ledger = ledger
        self._gate = gate
        self._payments = payments

    @returns_result
    async def process(self, raw_payload: bytes, signature: str) -> WebhookOutcome:
        event = self._payments.verify_webhook(raw_payload, signature)
        log = logger.bind(event_id=event.event_id, event_type=event.type)

        if await self._already_processed(event.event_id):
            log.info("stripe_event_duplicate")
            return WebhookOutcome(processed=False, event_type=event.type, action="duplicate_event")
        if event.type not in HANDLED_EVENTS:
            log.debug("stripe_event_ignored")
            return WebhookOutcome(processed=False, event_type=event.type, action="ignored")
        if not event.session_id:
            raise PaymentError("Checkout event without a session id")
        if event.payment_status != "paid":
            # Delayed methods settle later via async_payment_succeeded
            log.info("stripe_payment_pending", payment_status=event.payment_status)
            return WebhookOutcome(
                processed=False, event_type=event.type, action="awaiting_payment"
            )

        session = PaymentSession(
            session_id=event.session_id,
            payment_status=event.payment_status,
            metadata=event.metadata,
        )
        kind = session.metadata.get("type")
        if kind == CREDITS_PURCHASE_TYPE:
            action = await self._add_purchased_credits(session)
        elif kind == "hd_unlock":
            unlocked = await self._gate.apply_payment(session)
            action = "hd_already_unlocked" if unlocked.already_unlocked else "hd_unlocked"
        else:
            raise PaymentError(f"Unknown checkout type: {kind!r}")

        await self._record(event, action)
        log.info("stripe_event_processed", action=action, session_id=session.session_id)
        return WebhookOutcome(processed=True, event_type=event.type, action=action)

    async def _add_purchased_credits(self, session: PaymentSession) -> str:
        user_id = session.metadata.get("userId")
        try:
            credits = int(session.metadata.get("credits", ""))
        except ValueError:
            raise PaymentError("Credits purchase has no valid credit amount") from None
        if not user_id or credits <= 0:
            raise PaymentError("Credits purchase metadata is incomplete")
        pack = session.metadata.get("packId", "")
        receipt = (
            await self._ledger.credit(
                user_id,
                credits,
                f"Purchase of {credits} credits {pack}".strip(),
                tx_type="purchase",
                external_ref=session.session_id,
            )
        ).unwrap()
        return "credits_already_added" if receipt.duplicate else "credits_added"

    async def _already_processed(self, event_id: str) -> bool:
        async with self._sessions() as session:
            return await session.get(PaymentEventRow, event_id) is not None

    async def _record(self, event: PaymentEvent, action: str) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add(
                    PaymentEventRow(
                        id=event.event_id,
                        type=event.type,
                        session_id=event.session_id,
                        action=action,
                        payload={"metadata": event.metadata},
                    )
                )
        except IntegrityError:
            # A concurrent delivery recorded it first; effects are idempotent
            logger.info("stripe_event_record_race", event_id=event.event_id)


class CreditCheckout:
    """Opens checkout sessions for the fixed credit packs."""

    def __init__(self, payments: PaymentGateway, catalog: Catalog = CATALOG) -> None:
        self._payments = payments
        self._catalog = catalog

    @returns_result
    async def create_credits_checkout(self, user_id: str, email: str, pack_id: str) -> CheckoutSession:
        pack = self._catalog.pack(pack_id)
        page = f"{settings.frontend_url.rstrip('/')}/credits"
        checkout = await self._payments.create_checkout_session(
            price_id=pack.price_id,
            customer_email=email,
            metadata={
                "type": CREDITS_PURCHASE_TYPE,
                "userId": user_id,
                "credits": str(pack.credits),
                "packId": pack.id,
            },
            success_url=f"{page}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=page,
        )
        logger.info("credits_checkout_created", user_id=user_id, pack_id=pack.id)
        return checkout
