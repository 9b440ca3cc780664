"""Generation endpoints: upload, submit, poll, list, cancel, HD unlock, download.

Handlers are thin: they unwrap service Results and let the DomainError
handler in `app.main` turn failures into ErrorResponse JSON.
"""

import asyncio
import uuid

import structlog
from fastapi import APIRouter, Depends, UploadFile

from app.api.deps import Services, get_current_user, get_services
from app.errors import ValidationError
from app.models.contracts import (
    AuthenticatedUser,
    DownloadResponse,
    ErrorResponse,
    Generation,
    GenerationListResponse,
    HDCheckoutResponse,
    HDUnlockRequest,
    SubmitGenerationRequest,
    SubmittedGeneration,
    UnlockResult,
    UploadResponse,
)
from app.utils.image import MAX_UPLOAD_BYTES, to_jpeg, validate_room_photo
from app.utils.r2 import upload_key

logger = structlog.get_logger()

router = APIRouter(tags=["generations"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


@router.post(
    "/uploads",
    status_code=201,
    response_model=UploadResponse,
    responses={**_ERRORS, 502: {"model": ErrorResponse}},
)
async def upload_photo(
    file: UploadFile,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> UploadResponse:
    """Validate a room photo and store it under the caller's prefix."""
    # Stream-read with early termination to avoid buffering unbounded uploads
    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(65_536):
        total += len(chunk)
        if total > MAX_UPLOAD_BYTES:
            mb = MAX_UPLOAD_BYTES // (1024 * 1024)
            raise ValidationError(f"Photo exceeds {mb} MB limit")
        chunks.append(chunk)

    image = await asyncio.to_thread(validate_room_photo, b"".join(chunks))
    data = await asyncio.to_thread(to_jpeg, image)
    key = await services.storage.upload_bytes(upload_key(user.id, str(uuid.uuid4())), data)
    logger.info("photo_uploaded", key=key, width=image.width, height=image.height)
    return UploadResponse(image_ref=key, width=image.width, height=image.height)


@router.post(
    "/generations",
    status_code=201,
    response_model=SubmittedGeneration,
    responses={**_ERRORS, 402: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def submit_generation(
    body: SubmitGenerationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SubmittedGeneration:
    result = await services.orchestrator.submit_generation(
        user.id, body.style_slug, body.room_type, body.image_ref, body.transform_mode
    )
    return result.unwrap()


@router.get("/generations", response_model=GenerationListResponse, responses=_ERRORS)
async def list_generations(
    limit: int = 20,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> GenerationListResponse:
    generations = (await services.orchestrator.list_generations(user.id, limit)).unwrap()
    return GenerationListResponse(generations=generations)


@router.get("/generations/{generation_id}", response_model=Generation, responses=_ERRORS)
async def get_generation(
    generation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Generation:
    """Current state; polls the provider when the generation is still running."""
    return (await services.orchestrator.get_generation_status(generation_id, user.id)).unwrap()


@router.post(
    "/generations/{generation_id}/cancel", response_model=Generation, responses=_ERRORS
)
async def cancel_generation(
    generation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Generation:
    return (await services.orchestrator.cancel_generation(generation_id, user.id)).unwrap()


@router.post(
    "/generations/{generation_id}/hd-unlock",
    response_model=UnlockResult,
    responses={**_ERRORS, 402: {"model": ErrorResponse}},
)
async def unlock_hd(
    generation_id: str,
    body: HDUnlockRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> UnlockResult:
    result = await services.hd_gate.unlock_hd(
        generation_id, user.id, body.method, payment_ref=body.session_id
    )
    return result.unwrap()


@router.post(
    "/generations/{generation_id}/hd-checkout",
    response_model=HDCheckoutResponse,
    responses=_ERRORS,
)
async def create_hd_checkout(
    generation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> HDCheckoutResponse:
    return (await services.hd_gate.create_checkout(generation_id, user.id, user.email)).unwrap()


@router.get(
    "/generations/{generation_id}/download",
    response_model=DownloadResponse,
    responses=_ERRORS,
)
async def download_hd(
    generation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    url = (await services.hd_gate.download_url(generation_id, user.id)).unwrap()
    return DownloadResponse(url=url)
