"""
Pipeline dispatch.

Decides where the pipeline for a freshly uploaded job runs:
- inline: awaited inside the upload request
- background: an asyncio task owned by the dispatcher
- celery: the job id is sent to the Celery "pipeline" queue
"""

import asyncio
from enum import Enum
from typing import Callable, Optional, Set

from bgflip.core.exceptions import BgFlipError, InvalidTransitionError
from bgflip.core.logging import get_logger
from bgflip.pipeline.runner import ImagePipeline, RemoveBackgroundFn

logger = get_logger(__name__)


class DispatchMode(str, Enum):
    INLINE = "inline"
    BACKGROUND = "background"
    CELERY = "celery"


def _celery_enqueue(job_id: str):
    from bgflip.pipeline.tasks import run_image_pipeline

    run_image_pipeline.delay(job_id)


class PipelineDispatcher:
    """Runs or schedules ImagePipeline.run_job for a job id."""

    def __init__(
        self,
        mode: str,
        pipeline: Optional[ImagePipeline] = None,
        remove_background: Optional[RemoveBackgroundFn] = None,
        enqueue: Optional[Callable[[str], None]] = None,
    ):
        try:
            self.mode = DispatchMode(mode.lower())
        except ValueError:
            raise ValueError(f"Unsupported pipeline dispatch mode: {mode}")

        if self.mode != DispatchMode.CELERY and (pipeline is None or remove_background is None):
            raise ValueError(f"{self.mode.value} dispatch needs a pipeline and a background remover")

        self.pipeline = pipeline
        self.remove_background = remove_background
        self.enqueue = enqueue or _celery_enqueue
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def _run(self, job_id: str):
        try:
            await self.pipeline.run_job(job_id, self.remove_background)
        except InvalidTransitionError as e:
            logger.warning("pipeline_skipped", job_id=job_id, reason=e.message)
        except BgFlipError as e:
            # Already recorded on the job by the pipeline
            logger.info("pipeline_job_failed", job_id=job_id, error=e.message, phase=e.phase)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("pipeline_task_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "pipeline_task_crashed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__
            )

    async def dispatch(self, job_id: str):
        """Start the pipeline for job_id according to the dispatch mode."""
        logger.info("pipeline_dispatched", job_id=job_id, mode=self.mode.value)

        if self.mode == DispatchMode.INLINE:
            await self._run(job_id)
        elif self.mode == DispatchMode.BACKGROUND:
            task = asyncio.create_task(self._run(job_id), name=f"pipeline-{job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        else:
            await asyncio.to_thread(self.enqueue, job_id)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for running background tasks; True if none are left."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    async def shutdown(self, grace_seconds: float = 10.0):
        """Give running pipelines grace_seconds to finish, then cancel the rest."""
        if not self._tasks:
            return

        logger.info("dispatcher_draining", active=len(self._tasks), grace_seconds=grace_seconds)
        if await self.wait_idle(grace_seconds):
            return

        remaining = set(self._tasks)
        logger.warning("dispatcher_cancelling", active=len(remaining))
        for task in remaining:
            task.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)
