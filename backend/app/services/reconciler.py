"""Status reconciler: the single place provider observations land.

Webhooks, polls and cancellations all funnel through `apply`. It is safe to
call any number of times in any order: terminal generations are left alone,
and the status write is conditional, so only one caller completes or fails
a generation. The refund for a failure is written in the same storage
transaction as the failed transition, so it happens exactly when the
transition does.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from app.database import SessionFactory
from app.errors import NotFoundError, returns_result
from app.models.contracts import Generation, ProviderStatus
from app.services.generations import GenerationStore, transition_in
from app.services.ledger import refund_generation_in
from app.services.ports import AssetStorage, InferenceProvider
from app.utils.r2 import generation_output_key

logger = structlog.get_logger()


class StatusReconciler:
    def __init__(
        self,
        sessions: SessionFactory,
        store: GenerationStore,
        storage: AssetStorage,
        inference: InferenceProvider,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._storage = storage
        self._inference = inference

    @returns_result
    async def reconcile(
        self,
        generation_id: uuid.UUID | str,
        provider_status: ProviderStatus,
        output_ref: str | None = None,
        error: str | None = None,
    ) -> Generation:
        return await self.apply(generation_id, provider_status, output_ref, error)

    @returns_result
    async def reconcile_from_webhook(self, payload: dict[str, Any]) -> Generation:
        update = self._inference.parse_webhook(payload)
        generation = await self._store.find_by_provider_job_id(update.job_id)
        if generation is None:
            # Webhook raced ahead of the job id being recorded; the provider redelivers
            logger.warning("provider_webhook_unknown_job", job_id=update.job_id)
            raise NotFoundError(f"No generation for provider job {update.job_id}")
        return await self.apply(generation.id, update.status, update.output_url, update.error)

    async def apply(
        self,
        generation_id: uuid.UUID | str,
        provider_status: ProviderStatus,
        output_ref: str | None = None,
        error: str | None = None,
    ) -> Generation:
        current = await self._load(generation_id)
        if current.is_terminal:
            return current

        if provider_status in ("starting", "processing"):
            if current.status == "pending":
                moved = await self._store.transition(current.id, "processing")
                return moved or await self._load(current.id)
            return current

        if provider_status == "succeeded":
            if not output_ref:
                return await self.fail(current.id, error or "Provider reported success without output")
            return await self._complete(current, output_ref)

        return await self.fail(current.id, error or "Generation failed")

    async def fail(self, generation_id: uuid.UUID | str, error: str) -> Generation:
        """Mark failed and refund the charge, both or neither."""
        async with self._sessions.begin() as session:
            moved = await transition_in(session, generation_id, "failed", error=error[:1000])
            if moved is not None:
                await refund_generation_in(session, moved.id)
        if moved is None:
            return await self._load(generation_id)
        logger.info("generation_failed", generation_id=str(moved.id), error=error[:200])
        return moved

    async def _complete(self, current: Generation, output_ref: str) -> Generation:
        # Provider URLs expire; copy into owned storage before completing.
        # StorageError propagates and leaves the record non-terminal.
        key = generation_output_key(current.user_id, str(current.id))
        await self._storage.upload_from_url(output_ref, key)
        moved = await self._store.transition(current.id, "completed", output_image_ref=key)
        if moved is None:
            logger.info("generation_complete_lost_race", generation_id=str(current.id))
            return await self._load(current.id)
        logger.info("generation_completed", generation_id=str(current.id), output_key=key)
        return moved

    async def _load(self, generation_id: uuid.UUID | str) -> Generation:
        generation = await self._store.find_by_id(generation_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        return generation
