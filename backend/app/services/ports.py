"""Narrow ports onto the external collaborators.

Adapters live in `app.providers` (inference, payments) and `app.utils.r2`
(storage). Every adapter converts SDK and transport exceptions into the
`app.errors` taxonomy before they cross these interfaces.
"""

from __future__ import annotations

from typing import Any, Protocol

from app.models.contracts import CheckoutSession, PaymentEvent, PaymentSession, ProviderUpdate


class InferenceProvider(Protocol):
    async def submit(
        self,
        *,
        prompt: str,
        image_url: str,
        transform_mode: str,
        webhook_url: str | None = None,
    ) -> str:
        """Queue a generation job. Returns the provider job id."""
        ...

    async def check_status(self, job_id: str) -> ProviderUpdate: ...

    async def cancel(self, job_id: str) -> None: ...

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderUpdate: ...


class AssetStorage(Protocol):
    async def upload_from_url(self, url: str, key: str) -> str:
        """Copy a remote object into owned storage. Returns the storage key."""
        ...

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str: ...

    async def exists(self, key: str) -> bool: ...

    async def signed_url(self, key_or_url: str) -> str: ...


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    async def retrieve_session(self, session_id: str) -> PaymentSession: ...

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        """Check the signature and normalise the event. Raises PaymentError."""
        ...
