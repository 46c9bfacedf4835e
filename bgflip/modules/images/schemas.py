"""
Request/Response Schemas for the images API.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bgflip.modules.images.models import ProcessedImage


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Dimensions(CamelModel):
    width: int
    height: int


class UploadResponse(CamelModel):
    """Pointer to the job created by an upload."""
    id: str
    status: str
    message: str = "Image uploaded successfully. Processing will start automatically."
    original_url: str
    session_id: Optional[str] = None


class ImageStatusResponse(CamelModel):
    """Full job projection returned by status and list endpoints."""
    id: str
    status: str
    original_filename: str
    original_url: str
    processed_url: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    dimensions: Optional[Dimensions] = None
    file_size: int
    session_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, image: ProcessedImage) -> "ImageStatusResponse":
        return cls(
            id=image.id,
            status=image.status,
            original_filename=image.original_filename,
            original_url=image.original_url,
            processed_url=image.processed_url,
            error=image.error_message,
            processing_time_ms=image.processing_time_ms,
            dimensions=Dimensions(**image.dimensions) if image.dimensions else None,
            file_size=image.file_size,
            session_id=image.user_session_id,
            created_at=image.created_at,
            updated_at=image.updated_at,
            expires_at=image.expires_at,
        )


class DeleteResponse(CamelModel):
    message: str = "Image deleted successfully"
    id: str


class SessionImagesResponse(CamelModel):
    session_id: str
    images: List[ImageStatusResponse] = Field(default_factory=list)
    total: int


class ProviderInfoResponse(CamelModel):
    """Background removal service info and configuration check."""
    service: str
    has_api_key: bool
    is_production: bool
    valid: bool
    errors: List[str] = Field(default_factory=list)
