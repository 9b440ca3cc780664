"""Stripe payment gateway adapter.

The stripe SDK is synchronous; calls run in a worker thread. Any
`stripe.StripeError` becomes PaymentError before leaving this module, and
events are normalised into `PaymentEvent` so the webhook processor never
touches SDK objects.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import stripe
import structlog

from app.config import settings
from app.errors import PaymentError
from app.models.contracts import CheckoutSession, PaymentEvent, PaymentSession

logger = structlog.get_logger()

SIGNATURE_TOLERANCE_SECONDS = 300


def _metadata(obj: Any) -> dict[str, str]:
    if not obj:
        return {}
    raw = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)
    return {str(k): str(v) for k, v in raw.items()}


class StripeGateway:
    def __init__(self, *, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not price_id:
            raise PaymentError("No price configured for this purchase")
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                customer_email=customer_email,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_checkout_failed", error=str(exc), price_id=price_id)
            raise PaymentError("Could not create checkout session", detail=str(exc)) from exc
        logger.info("stripe_checkout_created", session_id=session.id, type=metadata.get("type"))
        return CheckoutSession(session_id=session.id, url=session.url or "")

    async def retrieve_session(self, session_id: str) -> PaymentSession:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=self._api_key
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_session_lookup_failed", session_id=session_id, error=str(exc))
            raise PaymentError("Checkout session not found", detail=str(exc)) from exc
        return PaymentSession(
            session_id=session.id,
            payment_status=session.payment_status or "",
            metadata=_metadata(session.metadata),
        )

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        if not self._webhook_secret:
            raise PaymentError("Webhook secret not configured")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe_webhook_signature_invalid", error=str(exc))
            raise PaymentError("Invalid webhook signature") from exc

        try:
            event = json.loads(body)
            obj = event.get("data", {}).get("object", {}) or {}
            return PaymentEvent(
                event_id=event["id"],
                type=event["type"],
                session_id=obj.get("id"),
                payment_status=obj.get("payment_status"),
                metadata={str(k): str(v) for k, v in (obj.get("metadata") or {}).items()},
            )
        except (ValueError, KeyError, AttributeError) as exc:
            raise PaymentError("Malformed webhook payload") from exc
