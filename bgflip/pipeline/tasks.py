"""
Celery Tasks for the Image Pipeline

- run_image_pipeline: runs the full pipeline for one job id
- cleanup_expired_images: periodic retention sweep (Celery beat)

Neither task retries: a failed job is terminal and is already recorded on
the job row by the pipeline.
"""

import asyncio
import traceback
from typing import Any, Dict

from bgflip.core.celery_app import celery_app
from bgflip.core.config import settings
from bgflip.core.database import create_session_maker, create_worker_engine
from bgflip.core.exceptions import BgFlipError, InvalidTransitionError
from bgflip.core.logging import clear_job_context, get_logger, set_job_context
from bgflip.core.storage import StorageFactory
from bgflip.modules.images.repository import ImageRepository, JobStatusStore
from bgflip.modules.images.service import ImageJobService
from bgflip.pipeline.background_removal import BackgroundRemovalService
from bgflip.pipeline.processor import ImageProcessor
from bgflip.pipeline.runner import ImagePipeline

logger = get_logger(__name__)


def _run_in_new_loop(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
        asyncio.set_event_loop(None)


async def _run_pipeline(job_id: str) -> Dict[str, Any]:
    engine = create_worker_engine(settings.DATABASE_URL)
    try:
        pipeline = ImagePipeline(
            processor=ImageProcessor(settings.processing_config()),
            storage=StorageFactory.get_storage(settings),
            status_store=JobStatusStore(create_session_maker(engine)),
            config=settings.pipeline_config(),
        )
        remover = BackgroundRemovalService(settings.background_removal_config())
        result = await pipeline.run_job(job_id, remover.remove_background)
        return {
            "job_id": job_id,
            "status": "completed",
            "processed_url": result.processed_url,
            "processing_time_ms": result.elapsed_ms,
        }
    finally:
        await engine.dispose()


async def _cleanup(now=None) -> int:
    engine = create_worker_engine(settings.DATABASE_URL)
    try:
        async with create_session_maker(engine)() as session:
            service = ImageJobService(
                repository=ImageRepository(session),
                storage=StorageFactory.get_storage(settings),
                processor=ImageProcessor(settings.processing_config()),
                background_remover=BackgroundRemovalService(settings.background_removal_config()),
                dispatcher=None,
                config=settings.pipeline_config(),
            )
            return await service.cleanup_expired(now)
    finally:
        await engine.dispose()


@celery_app.task(name="bgflip.pipeline.tasks.run_image_pipeline", acks_late=True)
def run_image_pipeline(job_id: str) -> Dict[str, Any]:
    """
    Run resize, background removal, flip, encode and persist for job_id.

    Returns:
        Summary dict; failures are returned as status "failed" after the
        pipeline has recorded them on the job
    """
    set_job_context(job_id)
    try:
        logger.info("task_pipeline_started")
        return _run_in_new_loop(_run_pipeline(job_id))
    except InvalidTransitionError as e:
        logger.warning("task_pipeline_skipped", reason=e.message)
        return {"job_id": job_id, "status": e.details.get("current"), "skipped": True}
    except BgFlipError as e:
        logger.warning("task_pipeline_failed", error=e.message, phase=e.phase)
        return {"job_id": job_id, "status": "failed", "error": e.message}
    except Exception as e:
        logger.error("task_pipeline_unexpected_error", error=str(e), traceback=traceback.format_exc())
        raise
    finally:
        clear_job_context()


@celery_app.task(name="bgflip.pipeline.tasks.cleanup_expired_images")
def cleanup_expired_images() -> Dict[str, Any]:
    """Delete jobs past their retention window together with their blobs."""
    deleted = _run_in_new_loop(_cleanup())
    logger.info("task_cleanup_completed", deleted=deleted)
    return {"deleted": deleted}
