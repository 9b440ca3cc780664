"""Inbound webhooks from Stripe and the inference provider.

Both return a non-2xx status when the event could not be applied, which
makes the sender redeliver it later.
"""

import json
import secrets

import structlog
from fastapi import APIRouter, Depends, Request

from app.api.deps import Services, get_services
from app.config import settings
from app.errors import AuthenticationError, ValidationError
from app.models.contracts import ErrorResponse, WebhookOutcome

logger = structlog.get_logger()

router = APIRouter(tags=["webhooks"])


@router.post(
    "/webhooks/stripe",
    response_model=WebhookOutcome,
    responses={401: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request, services: Services = Depends(get_services)
) -> WebhookOutcome:
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    return (await services.webhooks.process(payload, signature)).unwrap()


@router.post(
    "/webhooks/provider",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def provider_webhook(
    request: Request,
    token: str = "",
    services: Services = Depends(get_services),
) -> dict:
    expected = settings.provider_webhook_secret
    if not expected or not secrets.compare_digest(token, expected):
        raise AuthenticationError("Invalid webhook token")
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise ValidationError("Webhook body is not JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    generation = (await services.reconciler.reconcile_from_webhook(payload)).unwrap()
    logger.info(
        "provider_webhook_applied",
        generation_id=str(generation.id),
        status=generation.status,
    )
    return {"received": True, "generation_id": str(generation.id), "status": generation.status}
