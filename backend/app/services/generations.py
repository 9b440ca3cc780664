"""Generation record store.

Status moves forward only. Every status write is a conditional UPDATE whose
WHERE clause lists the allowed source states, so of two racing writers
exactly one observes rowcount 1. `transition_in` reports the loser as None;
`update` raises StatusTransitionError instead.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import SessionFactory
from app.errors import NotFoundError, StatusTransitionError, ValidationError
from app.models.contracts import Generation, GenerationStatus
from app.models.db import GenerationRow, utcnow

logger = structlog.get_logger()

ALLOWED_SOURCES: dict[str, tuple[str, ...]] = {
    "processing": ("pending",),
    "completed": ("pending", "processing"),
    "failed": ("pending", "processing"),
}

_UPDATABLE_FIELDS = frozenset(
    {"status", "output_image_ref", "provider_job_id", "payment_ref", "error", "hd_unlocked"}
)


def _as_uuid(generation_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(generation_id, uuid.UUID):
        return generation_id
    try:
        return uuid.UUID(str(generation_id))
    except ValueError:
        raise NotFoundError(f"Generation {generation_id} not found") from None


def _check_output_rule(status: str | None, fields: dict[str, Any]) -> None:
    has_output = fields.get("output_image_ref") is not None
    if status == "completed" and not has_output:
        raise ValidationError("A completed generation needs an output image")
    if has_output and status != "completed":
        raise ValidationError("Output image can only be set when completing a generation")


async def get_row_in(session: AsyncSession, generation_id: uuid.UUID | str) -> GenerationRow:
    row = await session.get(GenerationRow, _as_uuid(generation_id), populate_existing=True)
    if row is None:
        raise NotFoundError(f"Generation {generation_id} not found")
    return row


async def create_in(
    session: AsyncSession,
    *,
    user_id: str,
    style_slug: str,
    room_type: str,
    transform_mode: str,
    input_image_ref: str,
    prompt: str,
    generation_id: uuid.UUID | None = None,
) -> Generation:
    row = GenerationRow(
        id=generation_id or uuid.uuid4(),
        user_id=user_id,
        style_slug=style_slug,
        room_type=room_type,
        transform_mode=transform_mode,
        input_image_ref=input_image_ref,
        prompt=prompt,
        status="pending",
        hd_unlocked=False,
    )
    session.add(row)
    await session.flush()
    logger.info("generation_created", generation_id=str(row.id), user_id=user_id)
    return Generation.model_validate(row)


async def transition_in(
    session: AsyncSession,
    generation_id: uuid.UUID | str,
    to_status: GenerationStatus,
    **fields: Any,
) -> Generation | None:
    """Conditionally move to `to_status`. Returns None if the write lost."""
    sources = ALLOWED_SOURCES.get(to_status)
    if sources is None:
        raise StatusTransitionError(f"Cannot transition to {to_status}")
    _check_output_rule(to_status, fields)
    gid = _as_uuid(generation_id)
    result = await session.execute(
        update(GenerationRow)
        .where(GenerationRow.id == gid, GenerationRow.status.in_(sources))
        .values(status=to_status, updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    row = await get_row_in(session, gid)
    logger.info("generation_transitioned", generation_id=str(gid), status=to_status)
    return Generation.model_validate(row)


async def set_hd_unlocked_in(
    session: AsyncSession, generation_id: uuid.UUID | str, *, payment_ref: str | None = None
) -> bool:
    """Flip `hd_unlocked` once. Returns False when it was already set."""
    values: dict[str, Any] = {"hd_unlocked": True, "updated_at": utcnow()}
    if payment_ref is not None:
        values["payment_ref"] = payment_ref
    result = await session.execute(
        update(GenerationRow)
        .where(GenerationRow.id == _as_uuid(generation_id), GenerationRow.hd_unlocked.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class GenerationStore:
    def __init__(self, sessions: SessionFactory) -> None:
        self._sessions = sessions

    async def create(self, **kwargs: Any) -> Generation:
        async with self._sessions.begin() as session:
            return await create_in(session, **kwargs)

    async def find_by_id(self, generation_id: uuid.UUID | str) -> Generation | None:
        try:
            gid = _as_uuid(generation_id)
        except NotFoundError:
            return None
        async with self._sessions() as session:
            row = await session.get(GenerationRow, gid)
            return Generation.model_validate(row) if row else None

    async def find_by_provider_job_id(self, job_id: str) -> Generation | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(GenerationRow).where(GenerationRow.provider_job_id == job_id)
            )
            return Generation.model_validate(row) if row else None

    async def find_by_user_id(self, user_id: str, limit: int = 20) -> list[Generation]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(GenerationRow)
                .where(GenerationRow.user_id == user_id)
                .order_by(GenerationRow.created_at.desc())
                .limit(limit)
            )
            return [Generation.model_validate(row) for row in rows]

    async def update(self, generation_id: uuid.UUID | str, **fields: Any) -> Generation:
        """Apply `fields`; a status change that is not allowed raises StatusTransitionError."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        async with self._sessions.begin() as session:
            current = await get_row_in(session, generation_id)
            status = fields.pop("status", None)
            if status is None:
                _check_output_rule(None, fields)
                for name, value in fields.items():
                    setattr(current, name, value)
                current.updated_at = utcnow()
                await session.flush()
                return Generation.model_validate(current)
            moved = await transition_in(session, current.id, status, **fields)
            if moved is None:
                raise StatusTransitionError(
                    f"Generation {current.id} cannot move from {current.status} to {status}"
                )
            return moved

    async def transition(
        self, generation_id: uuid.UUID | str, to_status: GenerationStatus, **fields: Any
    ) -> Generation | None:
        async with self._sessions.begin() as session:
            return await transition_in(session, generation_id, to_status, **fields)

    async def set_hd_unlocked(
        self, generation_id: uuid.UUID | str, *, payment_ref: str | None = None
    ) -> bool:
        async with self._sessions.begin() as session:
            return await set_hd_unlocked_in(session, generation_id, payment_ref=payment_ref)
