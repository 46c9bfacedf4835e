"""
Image Pipeline

Turns an original upload into the final processed image and drives the job
through its status machine:

    pending -> processing -> (resize, background_removal, flip, encode,
                              persist, finalize) -> completed | failed

Exactly one transition to processing happens before the first phase and
exactly one terminal transition at the end. A failure in any phase is
recorded on the job and then re-raised; nothing is retried.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from bgflip.core.config import PipelineConfig
from bgflip.core.exceptions import BgFlipError, InvalidTransitionError, PipelineStageError
from bgflip.core.logging import LogContext, get_logger, set_phase
from bgflip.core.metrics import record_job_completion, record_job_started, track_phase_latency
from bgflip.core.storage import IStorage
from bgflip.modules.images.models import ProcessingStatus
from bgflip.modules.images.repository import JobStatusStore
from bgflip.pipeline.deadline import Deadline
from bgflip.pipeline.processor import ImageProcessor

logger = get_logger(__name__)

RemoveBackgroundFn = Callable[[bytes], Awaitable[bytes]]


class PipelinePhase(str, Enum):
    RESIZE = "resize"
    BACKGROUND_REMOVAL = "background_removal"
    FLIP = "flip"
    ENCODE = "encode"
    PERSIST = "persist"
    FINALIZE = "finalize"


@dataclass
class PipelineResult:
    processed_bytes: bytes
    elapsed_ms: int
    processed_url: str
    processed_storage_key: str
    width: int
    height: int


def failure_message(error: BaseException) -> str:
    if isinstance(error, BgFlipError):
        reason = error.message
    else:
        reason = str(error) or type(error).__name__
    return f"Processing failed: {reason}"


class ImagePipeline:
    """Runs the processing phases for one job at a time."""

    def __init__(
        self,
        processor: ImageProcessor,
        storage: IStorage,
        status_store: JobStatusStore,
        config: Optional[PipelineConfig] = None,
    ):
        self.processor = processor
        self.storage = storage
        self.status_store = status_store
        self.config = config or PipelineConfig()

    async def _start(self, job_id: str):
        job = await self.status_store.get(job_id)
        if job.status == ProcessingStatus.PENDING.value:
            await self.status_store.mark_processing(job_id)
        elif job.status != ProcessingStatus.PROCESSING.value:
            raise InvalidTransitionError(job.status, ProcessingStatus.PROCESSING.value, job_id=job_id)

    async def run(
        self,
        original_bytes: bytes,
        job_id: str,
        remove_background: RemoveBackgroundFn,
    ) -> PipelineResult:
        """
        Process original_bytes for job_id.

        Args:
            original_bytes: The uploaded image (JPEG, PNG, WebP or GIF)
            job_id: Job in pending or processing state
            remove_background: Async capability bytes -> bytes

        Returns:
            PipelineResult with the final bytes, elapsed time and public URL

        Raises:
            InvalidTransitionError: if the job is already terminal (nothing recorded)
            BgFlipError: any phase failure, after the job was marked failed
        """
        with LogContext(job_id=job_id):
            await self._start(job_id)

            deadline = Deadline(self.config.deadline_seconds)
            record_job_started()
            logger.info("pipeline_started", input_size=len(original_bytes))

            phase = PipelinePhase.RESIZE
            processed_key: Optional[str] = None
            try:
                if not original_bytes:
                    raise PipelineStageError("original image is empty", phase=phase.value)

                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    data, _, _ = await deadline.run(
                        phase.value, asyncio.to_thread(self.processor.resize_if_needed, original_bytes)
                    )

                phase = PipelinePhase.BACKGROUND_REMOVAL
                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    data = await deadline.run(phase.value, remove_background(data))

                phase = PipelinePhase.FLIP
                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    data = await deadline.run(
                        phase.value, asyncio.to_thread(self.processor.flip_horizontally, data)
                    )

                phase = PipelinePhase.ENCODE
                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    data, width, height = await deadline.run(
                        phase.value, asyncio.to_thread(self.processor.convert_to_output_format, data)
                    )

                phase = PipelinePhase.PERSIST
                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    processed_key = await deadline.run(
                        phase.value,
                        self.storage.upload(
                            self.config.processed_bucket,
                            data,
                            f"processed-{job_id}{self.processor.output_extension}",
                            content_type=self.processor.output_content_type,
                        ),
                    )
                    processed_url = self.storage.get_public_url(self.config.processed_bucket, processed_key)

                phase = PipelinePhase.FINALIZE
                with track_phase_latency(phase.value):
                    set_phase(phase.value)
                    elapsed_ms = deadline.elapsed_ms
                    await self.status_store.mark_completed(
                        job_id,
                        processed_url=processed_url,
                        processed_storage_key=processed_key,
                        processing_time_ms=elapsed_ms,
                        width=width,
                        height=height,
                    )

            except asyncio.CancelledError:
                await self._fail(job_id, phase, "Processing failed: processing interrupted", deadline, processed_key)
                raise
            except Exception as e:
                await self._fail(job_id, phase, failure_message(e), deadline, processed_key)
                if isinstance(e, BgFlipError):
                    if e.phase is None:
                        e.phase = phase.value
                    raise
                raise PipelineStageError(failure_message(e), phase=phase.value, job_id=job_id) from e
            finally:
                set_phase(None)

            record_job_completion("completed", deadline.elapsed_seconds)
            logger.info("pipeline_completed", elapsed_ms=elapsed_ms, width=width, height=height)

            return PipelineResult(
                processed_bytes=data,
                elapsed_ms=elapsed_ms,
                processed_url=processed_url,
                processed_storage_key=processed_key,
                width=width,
                height=height,
            )

    async def run_job(self, job_id: str, remove_background: RemoveBackgroundFn) -> PipelineResult:
        """Load the stored original for job_id and run the pipeline on it."""
        job = await self.status_store.get(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(job.status, ProcessingStatus.PROCESSING.value, job_id=job_id)

        try:
            original_bytes = await self.storage.download(self.config.original_bucket, job.original_storage_key)
        except BgFlipError as e:
            logger.error("original_download_failed", job_id=job_id, error=e.message)
            await self.status_store.mark_failed(job_id, failure_message(e))
            raise

        return await self.run(original_bytes, job_id, remove_background)

    async def _fail(
        self,
        job_id: str,
        phase: PipelinePhase,
        message: str,
        deadline: Deadline,
        processed_key: Optional[str],
    ):
        elapsed_ms = deadline.elapsed_ms
        logger.error("pipeline_failed", failed_phase=phase.value, error=message, elapsed_ms=elapsed_ms)
        record_job_completion("failed", deadline.elapsed_seconds, failure_phase=phase.value)

        if processed_key is not None:
            try:
                await self.storage.delete(self.config.processed_bucket, processed_key)
            except Exception as cleanup_error:
                logger.warning("processed_blob_cleanup_failed", key=processed_key, error=str(cleanup_error))

        try:
            await self.status_store.mark_failed(job_id, message, elapsed_ms)
        except Exception as record_error:
            logger.error("failed_status_not_recorded", error=str(record_error))
