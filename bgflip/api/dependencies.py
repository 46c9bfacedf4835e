"""
FastAPI Dependencies

Settings are read here, once, and turned into the config objects the
components are built with:
- Storage (process-wide singleton from StorageFactory)
- Image processor and background removal service (process-wide singletons)
- Pipeline dispatcher (owned by the application lifespan, on app.state)
- ImageJobService (per-request, with the request's database session)
"""

from functools import lru_cache

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bgflip.core.config import Settings, settings
from bgflip.core.database import get_session
from bgflip.core.storage import IStorage, StorageFactory
from bgflip.modules.images.repository import ImageRepository
from bgflip.modules.images.service import ImageJobService
from bgflip.pipeline.background_removal import BackgroundRemovalService
from bgflip.pipeline.dispatcher import PipelineDispatcher
from bgflip.pipeline.processor import ImageProcessor


def get_settings() -> Settings:
    return settings


def get_storage() -> IStorage:
    """Returns the configured blob store."""
    return StorageFactory.get_storage(settings)


@lru_cache
def get_processor() -> ImageProcessor:
    return ImageProcessor(settings.processing_config())


@lru_cache
def get_background_remover() -> BackgroundRemovalService:
    return BackgroundRemovalService(settings.background_removal_config())


def get_dispatcher(request: Request) -> PipelineDispatcher:
    """Returns the dispatcher created in the application lifespan."""
    return request.app.state.dispatcher


def get_image_service(
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage),
    processor: ImageProcessor = Depends(get_processor),
    background_remover: BackgroundRemovalService = Depends(get_background_remover),
    dispatcher: PipelineDispatcher = Depends(get_dispatcher),
) -> ImageJobService:
    """Returns ImageJobService bound to the request's session."""
    return ImageJobService(
        repository=ImageRepository(session),
        storage=storage,
        processor=processor,
        background_remover=background_remover,
        dispatcher=dispatcher,
        config=settings.pipeline_config(),
    )
