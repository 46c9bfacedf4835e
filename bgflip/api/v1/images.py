"""
Images Endpoints

POST   /api/v1/images                      - upload an image and start processing
GET    /api/v1/images/provider             - background removal service info
GET    /api/v1/images/session/{session_id} - all jobs of a session, newest first
GET    /api/v1/images/{id}                 - job status
DELETE /api/v1/images/{id}                 - delete a job and its images
POST   /api/v1/images/{id}/process         - dispatch a job still pending
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from bgflip.api.dependencies import get_background_remover, get_image_service
from bgflip.core.logging import get_logger
from bgflip.modules.images.schemas import (
    DeleteResponse,
    ImageStatusResponse,
    ProviderInfoResponse,
    SessionImagesResponse,
    UploadResponse,
)
from bgflip.modules.images.service import ImageJobService
from bgflip.pipeline.background_removal import BackgroundRemovalService

logger = get_logger(__name__)
router = APIRouter()


@router.post(
    "",
    response_model=UploadResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def upload_image(
    file: UploadFile = File(...),
    session_id: Optional[str] = Form(default=None, alias="sessionId"),
    service: ImageJobService = Depends(get_image_service),
):
    """
    Upload an image for background removal and horizontal flip.

    The response points at the new job; poll GET /api/v1/images/{id}
    until its status is completed or failed.
    """
    data = await file.read()
    logger.info(
        "upload_received",
        filename=file.filename,
        content_type=file.content_type,
        size=len(data),
    )
    return await service.upload(data, file.filename, file.content_type, session_id)


@router.get("/provider", response_model=ProviderInfoResponse, response_model_by_alias=True)
async def provider_info(
    remover: BackgroundRemovalService = Depends(get_background_remover),
):
    """Configured background removal service and whether its configuration is valid."""
    return ProviderInfoResponse(**remover.get_service_info())


@router.get(
    "/session/{session_id}",
    response_model=SessionImagesResponse,
    response_model_by_alias=True,
)
async def list_session_images(
    session_id: str,
    service: ImageJobService = Depends(get_image_service),
):
    return await service.list_by_session(session_id)


@router.get("/{image_id}", response_model=ImageStatusResponse, response_model_by_alias=True)
async def get_image_status(
    image_id: str,
    service: ImageJobService = Depends(get_image_service),
):
    return await service.get_status(image_id)


@router.delete("/{image_id}", response_model=DeleteResponse, response_model_by_alias=True)
async def delete_image(
    image_id: str,
    service: ImageJobService = Depends(get_image_service),
):
    """Delete the job record, then its original and processed images."""
    return await service.delete(image_id)


@router.post(
    "/{image_id}/process",
    response_model=ImageStatusResponse,
    response_model_by_alias=True,
)
async def process_image(
    image_id: str,
    service: ImageJobService = Depends(get_image_service),
):
    """Start processing a job that is still pending; other jobs are returned unchanged."""
    return await service.process_pending(image_id)
