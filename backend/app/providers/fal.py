"""fal.ai inference adapter over the queue REST API.

Jobs are queued with a webhook so completion reaches us without polling;
`check_status` covers lost webhooks. The model works img2img on the room
photo with a depth control on the same image, and the strength/depth pair
per transform mode decides how much of the room may change.

fal's queue states map onto the normalised provider status:
    IN_QUEUE    -> starting
    IN_PROGRESS -> processing
    COMPLETED   -> succeeded (output fetched) | failed (error present)
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.config import settings
from app.errors import ProviderPollError, ProviderSubmissionError, ValidationError
from app.models.contracts import ProviderUpdate

logger = structlog.get_logger()

STRUCTURAL_NEGATIVE_PROMPT = (
    "different room layout, changed walls, modified windows, different room proportions, "
    "architectural changes, different ceiling, changed floor plan, different room shape, "
    "added windows, removed windows, moved doors, different perspective, different camera "
    "angle, distorted proportions, extra rooms, merged rooms, wider room, narrower room, "
    "taller ceiling, lower ceiling, different flooring material change"
)

QUALITY_SUFFIX = "high quality, photorealistic, professional interior photography, 8k"

# (strength, depth control scale): lower strength keeps more of the photo
TRANSFORM_PARAMS: dict[str, tuple[float, float]] = {
    "full_redesign": (0.55, 1.0),
    "keep_layout": (0.45, 1.2),
    "decor_only": (0.35, 1.3),
}

NUM_INFERENCE_STEPS = 28
GUIDANCE_SCALE = 3.5

_STATUS_MAP = {"IN_QUEUE": "starting", "IN_PROGRESS": "processing"}


def build_input(prompt: str, image_url: str, transform_mode: str) -> dict[str, Any]:
    """Model input payload for one generation."""
    strength, depth_scale = TRANSFORM_PARAMS.get(transform_mode, TRANSFORM_PARAMS["full_redesign"])
    return {
        "prompt": f"{prompt}\n\n{QUALITY_SUFFIX}",
        "image_url": image_url,
        "strength": strength,
        "easycontrols": [
            {
                "control_method_url": "depth",
                "image_url": image_url,
                "image_control_type": "spatial",
                "scale": depth_scale,
            }
        ],
        "negative_prompt": STRUCTURAL_NEGATIVE_PROMPT,
        "num_inference_steps": NUM_INFERENCE_STEPS,
        "guidance_scale": GUIDANCE_SCALE,
        "enable_safety_checker": True,
        "output_format": "jpeg",
    }


def extract_output_url(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    images = payload.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict) and first.get("url"):
            return first["url"]
    image = payload.get("image")
    if isinstance(image, dict):
        return image.get("url")
    return None


class FalInferenceProvider:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.fal_key
        self._model = model or settings.fal_model
        self._base_url = (base_url or settings.fal_queue_url).rstrip("/")
        self._timeout = timeout or settings.fal_timeout_seconds
        self._transport = transport

    @property
    def _app_id(self) -> str:
        # Request URLs use the owner/app part of the model path only
        return "/".join(self._model.split("/")[:2])

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Key {self._api_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def submit(
        self,
        *,
        prompt: str,
        image_url: str,
        transform_mode: str,
        webhook_url: str | None = None,
    ) -> str:
        if not self._api_key:
            raise ProviderSubmissionError("Inference provider is not configured")
        params = {"fal_webhook": webhook_url} if webhook_url else None
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/{self._model}",
                    params=params,
                    json=build_input(prompt, image_url, transform_mode),
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "fal_submit_rejected",
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise ProviderSubmissionError(
                "Inference provider rejected the job",
                detail=f"HTTP {exc.response.status_code}",
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("fal_submit_failed", error=str(exc), error_type=type(exc).__name__)
            raise ProviderSubmissionError("Inference provider unreachable", detail=str(exc)) from exc

        request_id = body.get("request_id")
        if not request_id:
            raise ProviderSubmissionError("Inference provider returned no job id")
        logger.info("fal_job_submitted", job_id=request_id, transform_mode=transform_mode)
        return request_id

    async def check_status(self, job_id: str) -> ProviderUpdate:
        base = f"/{self._app_id}/requests/{job_id}"
        try:
            async with self._client() as client:
                response = await client.get(f"{base}/status")
                response.raise_for_status()
                status_body = response.json()
                if not isinstance(status_body, dict):
                    raise ProviderPollError("Malformed provider response")
                raw = status_body.get("status", "")
                if raw in _STATUS_MAP:
                    return ProviderUpdate(job_id=job_id, status=_STATUS_MAP[raw])
                if raw != "COMPLETED":
                    raise ProviderPollError(f"Unknown provider status: {raw!r}")
                if status_body.get("error"):
                    return ProviderUpdate(
                        job_id=job_id, status="failed", error=str(status_body["error"])
                    )

                result = await client.get(base)
                if result.status_code >= 400:
                    # Completed jobs whose result errors are model failures
                    return ProviderUpdate(
                        job_id=job_id,
                        status="failed",
                        error=_error_text(result),
                    )
                output_url = extract_output_url(result.json())
        except httpx.HTTPError as exc:
            logger.warning("fal_poll_failed", job_id=job_id, error=str(exc))
            raise ProviderPollError("Could not fetch job status", detail=str(exc)) from exc
        except ValueError as exc:
            raise ProviderPollError("Malformed provider response", detail=str(exc)) from exc

        if output_url is None:
            return ProviderUpdate(job_id=job_id, status="failed", error="No output image returned")
        return ProviderUpdate(job_id=job_id, status="succeeded", output_url=output_url)

    async def cancel(self, job_id: str) -> None:
        try:
            async with self._client() as client:
                response = await client.put(f"/{self._app_id}/requests/{job_id}/cancel")
        except httpx.HTTPError as exc:
            logger.warning("fal_cancel_failed", job_id=job_id, error=str(exc))
            return
        # 400 means the job already finished; nothing left to cancel
        logger.info("fal_cancel_requested", job_id=job_id, status_code=response.status_code)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderUpdate:
        if not isinstance(payload, dict):
            raise ValidationError("Malformed provider webhook")
        job_id = payload.get("request_id")
        status = payload.get("status")
        if not job_id or status not in ("OK", "ERROR"):
            raise ValidationError("Malformed provider webhook")
        if status == "ERROR":
            error = payload.get("error") or "Generation failed"
            return ProviderUpdate(job_id=job_id, status="failed", error=str(error))
        output_url = extract_output_url(payload.get("payload"))
        if output_url is None:
            return ProviderUpdate(job_id=job_id, status="failed", error="No output image returned")
        return ProviderUpdate(job_id=job_id, status="succeeded", output_url=output_url)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    return str(detail or f"HTTP {response.status_code}")[:500]
