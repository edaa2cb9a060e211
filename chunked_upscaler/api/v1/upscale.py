"""
Upscale Endpoints - Job Control Surface

POST /api/v1/upscale                   - Upload an image and start a job
GET  /api/v1/upscale/{job_id}          - Full job status
GET  /api/v1/upscale/{job_id}/progress - Lightweight progress for polling
POST /api/v1/upscale/{job_id}/cancel   - Cooperative cancel (idempotent)
GET  /api/v1/upscale/{job_id}/result   - Download the encoded artifact
"""

import asyncio
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, UploadFile, File, Form, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from chunked_upscaler.core.exceptions import JobNotFoundError, ResultNotReadyError, ValidationError
from chunked_upscaler.core.logging import get_logger, LogContext
from chunked_upscaler.core.storage import get_storage, IStorage
from chunked_upscaler.api.dependencies import get_job_controller
from chunked_upscaler.modules.upscale.codec import (
    build_artifact_name,
    decode_image,
    encode_image,
    media_type_for,
    validate_upload
)
from chunked_upscaler.modules.upscale.models import (
    Job,
    JobPhase,
    ProgressEvent,
    UpscaleConfig,
    UpscaleMetadata
)
from chunked_upscaler.pipeline.controller import JobController
from chunked_upscaler.pipeline.planner import plan_tiles

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class StartResponse(BaseModel):
    """Response from the upload endpoint."""
    job_id: str
    phase: str
    message: str
    tiles_total: int
    metadata: UpscaleMetadata


class JobStatusResponse(BaseModel):
    """Full job status response."""
    id: str
    phase: str
    message: str
    percent: float
    tiles_done: int
    tiles_total: int
    eta_seconds: Optional[int] = None
    config: Dict[str, Any]
    metadata: UpscaleMetadata
    error: Optional[Dict[str, Optional[str]]] = None
    result_url: Optional[str] = None
    artifact_url: Optional[str] = None
    processing_time_ms: int = 0
    created_at: str
    completed_at: Optional[str] = None


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool
    phase: str


# =============================================================================
# Helpers
# =============================================================================

def _get_job_or_404(controller: JobController, job_id: str) -> Job:
    job = controller.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def _build_config(**fields: Any) -> UpscaleConfig:
    try:
        return UpscaleConfig.from_settings(**fields)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid upscale configuration",
            details={"errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]}
        ) from e


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=StartResponse, status_code=202)
async def start_upscale(
    file: UploadFile = File(...),
    scale_factor: Optional[int] = Form(None),
    sharpness: Optional[int] = Form(None),
    noise_reduction: Optional[int] = Form(None),
    output_format: Optional[str] = Form(None),
    output_quality: Optional[int] = Form(None),
    controller: JobController = Depends(get_job_controller)
):
    """
    Upload an image and start an upscale job.

    Flow:
    1. Validate configuration and upload (type, size)
    2. Decode to RGBA
    3. Start the job (any running job is cancelled first)
    4. Return the job ID for status polling
    """
    config = _build_config(
        scale_factor=scale_factor,
        sharpness=sharpness,
        noise_reduction=noise_reduction,
        output_format=output_format,
        output_quality=output_quality
    )

    data = await file.read()
    validate_upload(data, file.content_type)

    source = await asyncio.to_thread(decode_image, data, file.filename)
    del data

    job = await asyncio.to_thread(controller.start, source, config)
    tiles_total = len(plan_tiles(source.width, source.height, config.tile_size, config.overlap))

    with LogContext(job_id=job.id, stage="upload"):
        logger.info(
            "upscale_job_submitted",
            filename=file.filename,
            width=source.width,
            height=source.height,
            scale_factor=config.scale_factor,
            tiles_total=tiles_total
        )

    metadata = job.metadata.model_copy(update={"tile_count": tiles_total})
    return StartResponse(
        job_id=job.id,
        phase=job.phase.value,
        message="Upscale job started",
        tiles_total=tiles_total,
        metadata=metadata
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    controller: JobController = Depends(get_job_controller),
    storage: IStorage = Depends(get_storage)
):
    """
    Get the current status of an upscale job.

    Returns phase, progress, ETA, dimensions metadata and, once completed,
    the URL to download the result. After the first download the stored
    artifact is also linked as artifact_url.
    """
    job = _get_job_or_404(controller, job_id)
    payload = job.to_response_dict()
    if job.phase == JobPhase.COMPLETED:
        payload["result_url"] = f"/api/v1/upscale/{job.id}/result"
        artifact_key = job.artifact_key
        if artifact_key is not None and await storage.exists(artifact_key):
            payload["artifact_url"] = await storage.get_url(artifact_key)
    return JobStatusResponse(**payload)


@router.get("/{job_id}/progress", response_model=ProgressEvent)
async def get_job_progress(
    job_id: str,
    controller: JobController = Depends(get_job_controller)
):
    """Lightweight progress snapshot, optimized for frequent polling."""
    return _get_job_or_404(controller, job_id).snapshot()


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    controller: JobController = Depends(get_job_controller)
):
    """Request cancellation. Calling it on a finished job is a no-op."""
    job = _get_job_or_404(controller, job_id)
    cancelled = controller.cancel(job)
    return CancelResponse(job_id=job.id, cancelled=cancelled, phase=job.phase.value)


@router.get("/{job_id}/result")
async def get_job_result(
    job_id: str,
    controller: JobController = Depends(get_job_controller),
    storage: IStorage = Depends(get_storage)
):
    """
    Download the upscaled image encoded per the job's output format.

    The artifact is also persisted to storage under jobs/<job_id>/.
    """
    job = _get_job_or_404(controller, job_id)
    result = job.result
    if job.phase != JobPhase.COMPLETED or result is None:
        raise ResultNotReadyError(job.id, job.phase.value)

    config = job.config
    content = await asyncio.to_thread(
        encode_image, result, config.output_format, config.output_quality
    )
    artifact_name = build_artifact_name(job.filename, config.scale_factor, config.output_format)
    media_type = media_type_for(config.output_format)

    if job.artifact_key is None or not await storage.exists(job.artifact_key):
        job.artifact_key = await storage.upload(
            content,
            artifact_name,
            folder=f"jobs/{job.id}",
            content_type=media_type
        )
        with LogContext(job_id=job.id, stage="finalizing"):
            logger.info("artifact_stored", storage_key=job.artifact_key, size_bytes=len(content))

    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact_name}"'}
    )
