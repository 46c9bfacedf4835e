"""
ProcessedImage Model with Status Tracking

One row per uploaded image. Status only moves forward:
pending -> processing -> completed | failed
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict
from datetime import datetime, timedelta, timezone

from bgflip.core.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and PostgreSQL columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProcessingStatus(str, Enum):
    """Job status states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ProcessingStatus.COMPLETED.value, ProcessingStatus.FAILED.value})

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    ProcessingStatus.PENDING.value: frozenset({
        ProcessingStatus.PROCESSING.value,
        ProcessingStatus.FAILED.value,
    }),
    ProcessingStatus.PROCESSING.value: frozenset({
        ProcessingStatus.COMPLETED.value,
        ProcessingStatus.FAILED.value,
    }),
    ProcessingStatus.COMPLETED.value: frozenset(),
    ProcessingStatus.FAILED.value: frozenset(),
}


class ProcessedImage(SQLModel, table=True):
    """
    Processing job for one uploaded image.

    Stores:
    - Blob keys and public URLs for the original and processed image
    - Status, error and timing of the pipeline run
    - Upload metadata (filename, size, dimensions)
    - Session grouping key and retention timestamp
    """
    __tablename__ = "processed_images"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Upload
    original_filename: str
    content_type: str = Field(default="application/octet-stream")
    file_size: int = Field(default=0)
    original_width: int = Field(default=0)
    original_height: int = Field(default=0)

    # Output dimensions once completed, upload dimensions before that
    dimensions: Optional[Dict[str, int]] = Field(default=None, sa_column=Column(JSON))

    # Blob store
    original_storage_key: str
    original_url: str
    processed_storage_key: Optional[str] = None
    processed_url: Optional[str] = None

    # Pipeline status
    status: str = Field(default=ProcessingStatus.PENDING.value, index=True)
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None

    # Anonymous grouping key supplied by the client
    user_session_id: Optional[str] = Field(default=None, index=True)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(default=None, index=True)

    @classmethod
    def new(
        cls,
        *,
        original_filename: str,
        content_type: str,
        file_size: int,
        width: int,
        height: int,
        original_storage_key: str,
        original_url: str,
        session_id: Optional[str],
        retention_hours: int = 24,
    ) -> "ProcessedImage":
        now = utcnow()
        return cls(
            original_filename=original_filename,
            content_type=content_type,
            file_size=file_size,
            original_width=width,
            original_height=height,
            dimensions={"width": width, "height": height},
            original_storage_key=original_storage_key,
            original_url=original_url,
            user_session_id=session_id,
            status=ProcessingStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=retention_hours),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def _transition(self, new_status: ProcessingStatus):
        if new_status.value not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.status, new_status.value, job_id=self.id)
        self.status = new_status.value
        self.updated_at = utcnow()

    def mark_processing(self):
        """Mark job as picked up by the pipeline."""
        self._transition(ProcessingStatus.PROCESSING)

    def mark_completed(
        self,
        processed_url: str,
        processed_storage_key: str,
        processing_time_ms: int,
        width: int,
        height: int,
    ):
        """Mark job as completed."""
        self._transition(ProcessingStatus.COMPLETED)
        self.processed_url = processed_url
        self.processed_storage_key = processed_storage_key
        self.processing_time_ms = processing_time_ms
        self.dimensions = {"width": width, "height": height}
        self.error_message = None

    def mark_failed(self, error_message: str, processing_time_ms: Optional[int] = None):
        """Mark job as failed."""
        self._transition(ProcessingStatus.FAILED)
        self.error_message = error_message or "Processing failed"
        self.processing_time_ms = processing_time_ms
        self.processed_url = None
