"""
Image job service: the upload, status, delete and list-by-session operations
plus expiry cleanup, on top of the repository, blob store and dispatcher.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

from bgflip.core.config import PipelineConfig
from bgflip.core.exceptions import BgFlipError, ValidationError
from bgflip.core.logging import get_logger
from bgflip.core.metrics import expired_images_cleaned_total, record_upload_rejected
from bgflip.core.storage import IStorage
from bgflip.modules.images.models import ProcessedImage, ProcessingStatus, utcnow
from bgflip.modules.images.repository import ImageRepository
from bgflip.modules.images.schemas import (
    DeleteResponse,
    ImageStatusResponse,
    SessionImagesResponse,
    UploadResponse,
)
from bgflip.pipeline.background_removal import BackgroundRemovalService
from bgflip.pipeline.dispatcher import PipelineDispatcher
from bgflip.pipeline.processor import ImageProcessor
from bgflip.pipeline.runner import failure_message

logger = get_logger(__name__)


class ImageJobService:
    def __init__(
        self,
        repository: ImageRepository,
        storage: IStorage,
        processor: ImageProcessor,
        background_remover: BackgroundRemovalService,
        dispatcher: Optional[PipelineDispatcher],
        config: Optional[PipelineConfig] = None,
    ):
        self.repository = repository
        self.storage = storage
        self.processor = processor
        self.background_remover = background_remover
        self.dispatcher = dispatcher
        self.config = config or PipelineConfig()

    async def _delete_blob(self, bucket: str, key: Optional[str], job_id: str):
        if not key:
            return
        try:
            await self.storage.delete(bucket, key)
        except BgFlipError as e:
            logger.warning("blob_cleanup_failed", job_id=job_id, bucket=bucket, key=key, error=e.message)

    async def _dispatch(self, image: ProcessedImage):
        """Hand the job to the dispatcher; a job that cannot be dispatched is marked failed."""
        try:
            await self.dispatcher.dispatch(image.id)
        except Exception as e:
            logger.error("dispatch_failed", job_id=image.id, error=str(e) or type(e).__name__)
            await self._fail_pending(image, e)
            raise

    async def _fail_pending(self, image: ProcessedImage, error: Exception):
        try:
            image = await self.repository.refresh(image)
            # An inline run may already have moved the job on
            if image.status != ProcessingStatus.PENDING.value:
                return
            image.mark_failed(failure_message(error))
            await self.repository.save(image)
        except BgFlipError as e:
            logger.error("dispatch_failure_not_recorded", job_id=image.id, error=e.message)

    async def upload(
        self,
        data: bytes,
        filename: Optional[str],
        content_type: Optional[str],
        session_id: Optional[str] = None,
    ) -> UploadResponse:
        """
        Accept an upload and start processing it.

        Validation and provider configuration are checked before anything is
        stored, so a rejected upload leaves no record and no blob behind.
        The response always reports the job's initial pending state. A job
        the dispatcher refuses is recorded as failed before the error propagates.
        """
        filename = filename or "upload"
        session_id = session_id or str(uuid.uuid4())

        try:
            self.processor.validate_file(content_type, len(data))
            metadata = await asyncio.to_thread(self.processor.get_image_metadata, data)
        except ValidationError as e:
            record_upload_rejected("validation")
            logger.warning("upload_rejected", filename=filename, reason=e.message)
            raise

        try:
            self.background_remover.ensure_configured()
        except BgFlipError as e:
            record_upload_rejected("configuration")
            logger.error("upload_rejected", filename=filename, reason=e.message)
            raise

        bucket = self.config.original_bucket
        original_key = await self.storage.upload(bucket, data, filename, content_type=content_type)
        original_url = self.storage.get_public_url(bucket, original_key)

        image = ProcessedImage.new(
            original_filename=filename,
            content_type=content_type,
            file_size=len(data),
            width=metadata.width,
            height=metadata.height,
            original_storage_key=original_key,
            original_url=original_url,
            session_id=session_id,
            retention_hours=self.config.retention_hours,
        )
        try:
            image = await self.repository.add(image)
        except BgFlipError:
            await self._delete_blob(bucket, original_key, image.id)
            raise

        logger.info(
            "upload_accepted",
            job_id=image.id,
            filename=filename,
            size=len(data),
            dimensions=f"{metadata.width}x{metadata.height}",
            session_id=session_id,
        )

        await self._dispatch(image)

        return UploadResponse(
            id=image.id,
            status=ProcessingStatus.PENDING.value,
            original_url=original_url,
            session_id=session_id,
        )

    async def get_status(self, image_id: str) -> ImageStatusResponse:
        image = await self.repository.get_or_raise(image_id)
        return ImageStatusResponse.from_model(image)

    async def _remove(self, image: ProcessedImage):
        # Record first: once it is gone the job is unreachable even if blobs linger
        await self.repository.delete(image)
        await self._delete_blob(self.config.original_bucket, image.original_storage_key, image.id)
        await self._delete_blob(self.config.processed_bucket, image.processed_storage_key, image.id)

    async def delete(self, image_id: str) -> DeleteResponse:
        image = await self.repository.get_or_raise(image_id)
        await self._remove(image)
        logger.info("image_deleted", job_id=image_id)
        return DeleteResponse(id=image_id)

    async def list_by_session(self, session_id: str) -> SessionImagesResponse:
        images = await self.repository.list_by_session(session_id)
        return SessionImagesResponse(
            session_id=session_id,
            images=[ImageStatusResponse.from_model(image) for image in images],
            total=len(images),
        )

    async def process_pending(self, image_id: str) -> ImageStatusResponse:
        """Dispatch the pipeline again for a job still pending; other states are returned as-is."""
        image = await self.repository.get_or_raise(image_id)
        if image.status == ProcessingStatus.PENDING.value:
            await self._dispatch(image)
            image = await self.repository.refresh(image)
        else:
            logger.info("process_request_ignored", job_id=image_id, status=image.status)
        return ImageStatusResponse.from_model(image)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every job past its expires_at, with its blobs. Returns the count."""
        now = now or utcnow()
        expired = await self.repository.list_expired(now)
        for image in expired:
            await self._remove(image)

        if expired:
            expired_images_cleaned_total.inc(len(expired))
        logger.info("expired_images_cleaned", count=len(expired))
        return len(expired)
