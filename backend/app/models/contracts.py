"""Contract models shared by services, provider adapters and the HTTP API.

Domain records (Generation, CreditTransaction) are read-only snapshots of
ORM rows. Provider and payment payloads are normalised into the tagged
models below at the adapter boundary, so nothing past `app.providers`
ever sees a raw SDK object.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

GenerationStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

TransactionType = Literal["purchase", "generation", "refund", "bonus", "hd_unlock"]

TransformMode = Literal["full_redesign", "keep_layout", "decor_only", "rearrange"]

# Normalised provider job status, whatever the provider calls it
ProviderStatus = Literal["starting", "processing", "succeeded", "failed"]


# === Domain records ===


class CreditTransaction(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    user_id: str
    amount: int
    type: TransactionType
    description: str
    external_ref: str | None = None
    generation_id: uuid.UUID | None = None
    created_at: datetime


class Generation(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    user_id: str
    style_slug: str
    room_type: str
    transform_mode: TransformMode
    input_image_ref: str
    output_image_ref: str | None = None
    status: GenerationStatus
    prompt: str
    hd_unlocked: bool = False
    provider_job_id: str | None = None
    payment_ref: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class LedgerReceipt(BaseModel):
    """Outcome of a balance-affecting ledger call."""

    balance: int
    transaction_id: uuid.UUID | None = None
    duplicate: bool = False


class SubmittedGeneration(BaseModel):
    generation: Generation
    credits_remaining: int


class UnlockResult(BaseModel):
    generation_id: uuid.UUID
    hd_unlocked: bool = True
    already_unlocked: bool = False
    method: Literal["credit", "payment"]
    credits_remaining: int | None = None


class WebhookOutcome(BaseModel):
    processed: bool
    event_type: str
    action: str | None = None


# === Port payloads ===


class ProviderUpdate(BaseModel):
    """A provider job observation, from a webhook or a status poll."""

    job_id: str
    status: ProviderStatus
    output_url: str | None = None
    error: str | None = None


class CheckoutSession(BaseModel):
    session_id: str
    url: str


class PaymentSession(BaseModel):
    session_id: str
    payment_status: str
    metadata: dict[str, str] = {}


class PaymentEvent(BaseModel):
    event_id: str
    type: str
    session_id: str | None = None
    payment_status: str | None = None
    metadata: dict[str, str] = {}


class AuthenticatedUser(BaseModel):
    id: str
    email: str


# === API Request/Response Models ===


class UploadResponse(BaseModel):
    image_ref: str
    width: int
    height: int


class SubmitGenerationRequest(BaseModel):
    style_slug: str = Field(min_length=1, max_length=50)
    room_type: str = Field(min_length=1, max_length=50)
    image_ref: str = Field(min_length=1, max_length=1000)
    transform_mode: TransformMode = "full_redesign"


class GenerationListResponse(BaseModel):
    generations: list[Generation]


class HDUnlockRequest(BaseModel):
    method: Literal["credit", "payment"]
    session_id: str | None = None


class PurchaseCreditsRequest(BaseModel):
    pack_id: str


class BalanceResponse(BaseModel):
    balance: int


class CreditHistoryResponse(BaseModel):
    transactions: list[CreditTransaction]


class CreditPackResponse(BaseModel):
    id: str
    credits: int
    price_cents: int
    price_display: str
    popular: bool = False


class HDCheckoutResponse(BaseModel):
    already_unlocked: bool
    session_id: str | None = None
    checkout_url: str | None = None


class DownloadResponse(BaseModel):
    url: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    detail: str | None = None
