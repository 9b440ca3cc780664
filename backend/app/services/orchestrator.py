"""Generation orchestrator: submit, poll, list and cancel generations.

Submission charges and creates the record in one storage transaction
before anything is sent to the provider, so a crash between the two can
at worst leave a charged `pending` record without a job id. Those are
expired and refunded by the next status read once they are older than
`stale_pending_seconds`.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import structlog

from app.catalog import CATALOG, TRANSFORM_MODES, Catalog
from app.config import settings
from app.database import SessionFactory
from app.errors import (
    DomainError,
    ForbiddenError,
    NotFoundError,
    ProviderPollError,
    StorageError,
    ValidationError,
    returns_result,
)
from app.models.contracts import Generation, SubmittedGeneration
from app.services.generations import GenerationStore, create_in
from app.services.ledger import debit_in
from app.services.ports import AssetStorage, InferenceProvider
from app.services.reconciler import StatusReconciler
from app.utils.r2 import is_remote_url

logger = structlog.get_logger()

MAX_LIST_LIMIT = 100


def default_webhook_url() -> str:
    base = settings.public_base_url.rstrip("/")
    return f"{base}/api/v1/webhooks/provider?token={settings.provider_webhook_secret}"


def _age_seconds(created_at: datetime) -> float:
    # SQLite hands back naive datetimes
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return (datetime.now(UTC) - created_at).total_seconds()


class GenerationOrchestrator:
    def __init__(
        self,
        sessions: SessionFactory,
        store: GenerationStore,
        reconciler: StatusReconciler,
        inference: InferenceProvider,
        storage: AssetStorage,
        catalog: Catalog = CATALOG,
        *,
        webhook_url: str | None = None,
        stale_pending_seconds: int | None = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._reconciler = reconciler
        self._inference = inference
        self._storage = storage
        self._catalog = catalog
        self._webhook_url = webhook_url if webhook_url is not None else default_webhook_url()
        self._stale_after = (
            settings.stale_pending_seconds if stale_pending_seconds is None else stale_pending_seconds
        )

    @returns_result
    async def submit_generation(
        self,
        user_id: str,
        style_slug: str,
        room_type: str,
        image_ref: str,
        transform_mode: str = "full_redesign",
    ) -> SubmittedGeneration:
        style = self._catalog.style(style_slug)
        room = self._catalog.room(room_type)
        if transform_mode not in TRANSFORM_MODES:
            raise ValidationError(f"Unknown transform mode: {transform_mode}")
        await self._check_image_ref(user_id, image_ref)

        generation_id = uuid.uuid4()
        prompt = self._catalog.render_prompt(style, room, transform_mode)
        async with self._sessions.begin() as session:
            receipt = await debit_in(
                session,
                user_id,
                style.credit_cost,
                f"Generation {style.name} - {room.name}",
                generation_id=generation_id,
            )
            generation = await create_in(
                session,
                generation_id=generation_id,
                user_id=user_id,
                style_slug=style.slug,
                room_type=room.slug,
                transform_mode=transform_mode,
                input_image_ref=image_ref,
                prompt=prompt,
            )

        log = logger.bind(generation_id=str(generation_id), user_id=user_id)
        try:
            image_url = await self._storage.signed_url(image_ref)
            job_id = await self._inference.submit(
                prompt=prompt,
                image_url=image_url,
                transform_mode=transform_mode,
                webhook_url=self._webhook_url,
            )
        except DomainError as exc:
            log.error("generation_submit_failed", error=exc.message, code=exc.code)
            await self._reconciler.fail(generation_id, f"Submission failed: {exc.message}")
            raise

        moved = await self._store.transition(generation_id, "processing", provider_job_id=job_id)
        if moved is None:
            # Cancelled or expired while the job was being queued
            log.warning("generation_submit_record_moved", job_id=job_id)
            moved = await self._store.find_by_id(generation_id) or generation
        log.info("generation_submitted", job_id=job_id, style=style.slug, room=room.slug)
        return SubmittedGeneration(generation=moved, credits_remaining=receipt.balance)

    @returns_result
    async def get_generation_status(self, generation_id: uuid.UUID | str, user_id: str) -> Generation:
        generation = await self._store.find_by_id(generation_id)
        if generation is None or generation.user_id != user_id:
            raise NotFoundError(f"Generation {generation_id} not found")
        if generation.is_terminal:
            return generation

        if generation.provider_job_id is None:
            if generation.status == "pending" and _age_seconds(generation.created_at) > self._stale_after:
                logger.warning("generation_stale_pending", generation_id=str(generation.id))
                return await self._reconciler.fail(generation.id, "Submission interrupted")
            return generation

        try:
            update = await self._inference.check_status(generation.provider_job_id)
            return await self._reconciler.apply(
                generation.id, update.status, update.output_url, update.error
            )
        except (ProviderPollError, StorageError) as exc:
            logger.warning(
                "generation_poll_deferred",
                generation_id=str(generation.id),
                error=exc.message,
                code=exc.code,
            )
            return await self._store.find_by_id(generation.id) or generation

    @returns_result
    async def list_generations(self, user_id: str, limit: int = 20) -> list[Generation]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        return await self._store.find_by_user_id(user_id, limit)

    @returns_result
    async def cancel_generation(self, generation_id: uuid.UUID | str, user_id: str) -> Generation:
        generation = await self._store.find_by_id(generation_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        if generation.user_id != user_id:
            raise ForbiddenError("You do not own this generation")
        if generation.is_terminal:
            return generation
        if generation.provider_job_id:
            await self._inference.cancel(generation.provider_job_id)
        logger.info("generation_cancel_requested", generation_id=str(generation.id))
        return await self._reconciler.fail(generation.id, "Cancelled by user")

    async def _check_image_ref(self, user_id: str, image_ref: str) -> None:
        if is_remote_url(image_ref):
            return
        if not image_ref.startswith(f"users/{user_id}/") or ".." in image_ref:
            raise ValidationError("Image reference does not belong to you")
        if not await self._storage.exists(image_ref):
            raise ValidationError("Uploaded image not found", detail=image_ref)
