"""HD unlock gate.

Two ways to unlock a completed generation's HD download: spend a credit,
or pay once through a checkout session. The flag flip is conditional on
`hd_unlocked = false`, and a credit unlock writes the flip and its debit in
one storage transaction, so repeated or racing unlocks charge at most once.
"""

from __future__ import annotations

import uuid
from typing import Literal

import structlog

from app.config import settings
from app.database import SessionFactory
from app.errors import ForbiddenError, NotFoundError, PaymentError, ValidationError, returns_result
from app.models.contracts import Generation, HDCheckoutResponse, PaymentSession, UnlockResult
from app.services.generations import GenerationStore, set_hd_unlocked_in
from app.services.ledger import debit_in
from app.services.ports import AssetStorage, PaymentGateway

logger = structlog.get_logger()

HD_UNLOCK_TYPE = "hd_unlock"


def check_hd_session(session: PaymentSession, generation_id: str, user_id: str) -> None:
    """Raise PaymentError unless `session` paid for this generation and user."""
    if session.payment_status != "paid":
        raise PaymentError("Payment not completed", detail=session.payment_status)
    meta = session.metadata
    if meta.get("type") != HD_UNLOCK_TYPE:
        raise PaymentError("Checkout session is not an HD unlock")
    if meta.get("generationId") != generation_id or meta.get("userId") != user_id:
        raise PaymentError("Checkout session does not match this generation")


class HDUnlockGate:
    def __init__(
        self,
        sessions: SessionFactory,
        store: GenerationStore,
        payments: PaymentGateway,
        storage: AssetStorage,
        *,
        credit_cost: int | None = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._payments = payments
        self._storage = storage
        self._credit_cost = settings.hd_unlock_credit_cost if credit_cost is None else credit_cost

    @returns_result
    async def unlock_with_credit(self, generation_id: uuid.UUID | str, user_id: str) -> UnlockResult:
        generation = await self._owned(generation_id, user_id)
        if generation.hd_unlocked:
            return UnlockResult(generation_id=generation.id, already_unlocked=True, method="credit")
        self._require_completed(generation)

        async with self._sessions.begin() as session:
            flipped = await set_hd_unlocked_in(session, generation.id)
            receipt = None
            if flipped:
                receipt = await debit_in(
                    session,
                    user_id,
                    self._credit_cost,
                    f"HD unlock {generation.id}",
                    generation_id=generation.id,
                    tx_type="hd_unlock",
                )
        if receipt is None:
            return UnlockResult(generation_id=generation.id, already_unlocked=True, method="credit")
        logger.info(
            "hd_unlocked", generation_id=str(generation.id), method="credit", balance=receipt.balance
        )
        return UnlockResult(
            generation_id=generation.id, method="credit", credits_remaining=receipt.balance
        )

    @returns_result
    async def unlock_with_payment(
        self, generation_id: uuid.UUID | str, user_id: str, checkout_session_id: str
    ) -> UnlockResult:
        generation = await self._owned(generation_id, user_id)
        if generation.hd_unlocked:
            return UnlockResult(generation_id=generation.id, already_unlocked=True, method="payment")
        session = await self._payments.retrieve_session(checkout_session_id)
        check_hd_session(session, str(generation.id), user_id)
        return await self._flip_paid(generation, session.session_id)

    async def apply_payment(self, session: PaymentSession) -> UnlockResult:
        """Unlock from a verified payment event; identity comes from session metadata."""
        generation_id = session.metadata.get("generationId", "")
        user_id = session.metadata.get("userId", "")
        if not generation_id or not user_id:
            raise PaymentError("HD unlock payment is missing generationId or userId")
        generation = await self._store.find_by_id(generation_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        check_hd_session(session, str(generation.id), generation.user_id)
        if generation.hd_unlocked:
            return UnlockResult(generation_id=generation.id, already_unlocked=True, method="payment")
        return await self._flip_paid(generation, session.session_id)

    @returns_result
    async def unlock_hd(
        self,
        generation_id: uuid.UUID | str,
        user_id: str,
        method: Literal["credit", "payment"],
        payment_ref: str | None = None,
    ) -> UnlockResult:
        if method == "credit":
            return (await self.unlock_with_credit(generation_id, user_id)).unwrap()
        if method == "payment":
            if not payment_ref:
                raise ValidationError("A checkout session id is required for payment unlocks")
            return (await self.unlock_with_payment(generation_id, user_id, payment_ref)).unwrap()
        raise ValidationError(f"Unknown unlock method: {method}")

    @returns_result
    async def create_checkout(
        self, generation_id: uuid.UUID | str, user_id: str, email: str
    ) -> HDCheckoutResponse:
        generation = await self._owned(generation_id, user_id)
        if generation.hd_unlocked:
            return HDCheckoutResponse(already_unlocked=True)
        self._require_completed(generation)
        page = f"{settings.frontend_url.rstrip('/')}/generations/{generation.id}"
        checkout = await self._payments.create_checkout_session(
            price_id=settings.stripe_price_hd_unlock,
            customer_email=email,
            metadata={
                "type": HD_UNLOCK_TYPE,
                "generationId": str(generation.id),
                "userId": user_id,
            },
            success_url=f"{page}?hd_session={{CHECKOUT_SESSION_ID}}",
            cancel_url=page,
        )
        return HDCheckoutResponse(
            already_unlocked=False, session_id=checkout.session_id, checkout_url=checkout.url
        )

    @returns_result
    async def download_url(self, generation_id: uuid.UUID | str, user_id: str) -> str:
        generation = await self._owned(generation_id, user_id)
        if not generation.hd_unlocked:
            raise ForbiddenError("Unlock HD to download this image")
        if generation.output_image_ref is None:
            raise ValidationError("Generation has no output image")
        return await self._storage.signed_url(generation.output_image_ref)

    async def _flip_paid(self, generation: Generation, session_id: str) -> UnlockResult:
        self._require_completed(generation)
        flipped = await self._store.set_hd_unlocked(generation.id, payment_ref=session_id)
        if flipped:
            logger.info(
                "hd_unlocked", generation_id=str(generation.id), method="payment", session_id=session_id
            )
        return UnlockResult(
            generation_id=generation.id, already_unlocked=not flipped, method="payment"
        )

    async def _owned(self, generation_id: uuid.UUID | str, user_id: str) -> Generation:
        generation = await self._store.find_by_id(generation_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        if generation.user_id != user_id:
            raise ForbiddenError("You do not own this generation")
        return generation

    @staticmethod
    def _require_completed(generation: Generation) -> None:
        if generation.status != "completed":
            raise ValidationError("Only completed generations can be unlocked in HD")
