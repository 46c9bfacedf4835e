"""
Celery Application Configuration

Used when PIPELINE_DISPATCH_MODE=celery, and for the periodic cleanup of
expired images via Celery beat.
"""

from celery import Celery
from kombu import Queue

from bgflip.core.config import settings

# Create Celery app
celery_app = Celery(
    "bgflip",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "bgflip.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=int(settings.PIPELINE_DEADLINE_SECONDS) + 30,
    task_soft_time_limit=int(settings.PIPELINE_DEADLINE_SECONDS) + 15,

    # Result expiration
    result_expires=settings.RETENTION_HOURS * 3600,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("pipeline", routing_key="pipeline.#"),
    ),

    # Task routing
    task_routes={
        "bgflip.pipeline.tasks.run_image_pipeline": {"queue": "pipeline"},
        "bgflip.pipeline.tasks.cleanup_expired_images": {"queue": "default"},
    },

    # No automatic retries: a failed job is terminal
    task_acks_late=True,
    task_reject_on_worker_lost=False,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "cleanup-expired-images": {
        "task": "bgflip.pipeline.tasks.cleanup_expired_images",
        "schedule": 3600.0,
    },
}
