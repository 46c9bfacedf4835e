"""
Persistence for ProcessedImage rows.

ImageRepository works inside a caller-owned session (request scope).
JobStatusStore opens a short session per status transition so that every
transition is committed before the pipeline moves on.
"""

from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from bgflip.core.exceptions import DatabaseError, ImageNotFoundError
from bgflip.core.logging import get_logger
from bgflip.modules.images.models import ProcessedImage, utcnow

logger = get_logger(__name__)


class ImageRepository:
    """Data access for the processed_images table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, image: ProcessedImage) -> ProcessedImage:
        try:
            self.session.add(image)
            await self.session.commit()
            await self.session.refresh(image)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(f"Failed to create image record: {e}")
        return image

    async def get(self, image_id: str) -> Optional[ProcessedImage]:
        try:
            result = await self.session.execute(
                select(ProcessedImage).where(ProcessedImage.id == image_id)
            )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load image {image_id}: {e}")
        return result.scalar_one_or_none()

    async def get_or_raise(self, image_id: str) -> ProcessedImage:
        image = await self.get(image_id)
        if image is None:
            raise ImageNotFoundError(image_id)
        return image

    async def refresh(self, image: ProcessedImage) -> ProcessedImage:
        try:
            await self.session.refresh(image)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to reload image {image.id}: {e}")
        return image

    async def save(self, image: ProcessedImage) -> ProcessedImage:
        try:
            self.session.add(image)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(f"Failed to update image record {image.id}: {e}")
        return image

    async def list_by_session(self, session_id: str) -> List[ProcessedImage]:
        """All jobs for a session, newest first."""
        query = (
            select(ProcessedImage)
            .where(ProcessedImage.user_session_id == session_id)
            .order_by(ProcessedImage.created_at.desc())
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to fetch images for session {session_id}: {e}")
        return list(result.scalars().all())

    async def list_expired(self, now: Optional[datetime] = None, limit: int = 500) -> List[ProcessedImage]:
        query = (
            select(ProcessedImage)
            .where(ProcessedImage.expires_at.is_not(None))
            .where(ProcessedImage.expires_at <= (now or utcnow()))
            .order_by(ProcessedImage.expires_at)
            .limit(limit)
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to fetch expired images: {e}")
        return list(result.scalars().all())

    async def delete(self, image: ProcessedImage):
        try:
            await self.session.delete(image)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(f"Failed to delete image record {image.id}: {e}")


class JobStatusStore:
    """Status transitions for the pipeline, one committed transaction each."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def _apply(self, image_id: str, mutate: Callable[[ProcessedImage], None]) -> ProcessedImage:
        async with self.session_factory() as session:
            repo = ImageRepository(session)
            image = await repo.get_or_raise(image_id)
            mutate(image)
            try:
                session.add(image)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to update status of {image_id}: {e}")
            logger.info("job_status_updated", job_id=image_id, status=image.status)
            return image

    async def get(self, image_id: str) -> ProcessedImage:
        async with self.session_factory() as session:
            return await ImageRepository(session).get_or_raise(image_id)

    async def mark_processing(self, image_id: str) -> ProcessedImage:
        return await self._apply(image_id, lambda image: image.mark_processing())

    async def mark_completed(
        self,
        image_id: str,
        processed_url: str,
        processed_storage_key: str,
        processing_time_ms: int,
        width: int,
        height: int,
    ) -> ProcessedImage:
        return await self._apply(
            image_id,
            lambda image: image.mark_completed(
                processed_url, processed_storage_key, processing_time_ms, width, height
            ),
        )

    async def mark_failed(
        self,
        image_id: str,
        error_message: str,
        processing_time_ms: Optional[int] = None,
    ) -> ProcessedImage:
        return await self._apply(
            image_id, lambda image: image.mark_failed(error_message, processing_time_ms)
        )
