import asyncio
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from bgflip.core.config import PipelineConfig, ProcessingConfig
from bgflip.core.exceptions import (
    BackgroundRemovalTimeoutError,
    DatabaseError,
    DeadlineExceededError,
    InvalidTransitionError,
    PipelineStageError,
    StorageError,
)
from bgflip.pipeline.processor import ImageProcessor
from bgflip.pipeline.runner import ImagePipeline


def job(status="pending"):
    record = MagicMock()
    record.status = status
    record.is_terminal = status in ("completed", "failed")
    record.original_storage_key = "1-original.png"
    return record


def build_pipeline(status="pending", deadline_seconds=30.0, processing_config=None):
    status_store = AsyncMock()
    status_store.get.return_value = job(status)

    storage = AsyncMock()
    storage.upload.return_value = "2-processed.png"
    storage.get_public_url = MagicMock(
        side_effect=lambda bucket, key: f"http://test/static/storage/{bucket}/{key}"
    )

    pipeline = ImagePipeline(
        processor=ImageProcessor(processing_config or ProcessingConfig()),
        storage=storage,
        status_store=status_store,
        config=PipelineConfig(deadline_seconds=deadline_seconds),
    )
    return pipeline, status_store, storage


async def passthrough(data: bytes) -> bytes:
    return data


@pytest.mark.asyncio
async def test_successful_run_records_processing_then_completed(split_image_factory):
    pipeline, status_store, storage = build_pipeline()

    result = await pipeline.run(split_image_factory(40, 20), "job-1", passthrough)

    status_store.mark_processing.assert_awaited_once_with("job-1")
    status_store.mark_completed.assert_awaited_once()
    status_store.mark_failed.assert_not_awaited()

    kwargs = status_store.mark_completed.await_args.kwargs
    assert kwargs["processed_url"] == "http://test/static/storage/processed-images/2-processed.png"
    assert kwargs["processed_storage_key"] == "2-processed.png"
    assert (kwargs["width"], kwargs["height"]) == (40, 20)

    bucket, data, filename = storage.upload.await_args.args
    assert bucket == "processed-images"
    assert filename == "processed-job-1.png"
    assert storage.upload.await_args.kwargs["content_type"] == "image/png"

    with Image.open(io.BytesIO(result.processed_bytes)) as image:
        image = image.convert("RGB")
        assert image.getpixel((5, 10)) == (0, 0, 255)
        assert image.getpixel((35, 10)) == (255, 0, 0)
    assert result.elapsed_ms >= 0
    assert data == result.processed_bytes


@pytest.mark.asyncio
async def test_background_removal_receives_resized_image(image_factory):
    pipeline, status_store, _ = build_pipeline(
        processing_config=ProcessingConfig(max_width=100, max_height=100)
    )
    seen = {}

    async def remover(data: bytes) -> bytes:
        with Image.open(io.BytesIO(data)) as image:
            seen["size"] = image.size
        return data

    result = await pipeline.run(image_factory(400, 200), "job-1", remover)

    assert seen["size"] == (100, 50)
    assert (result.width, result.height) == (100, 50)


@pytest.mark.asyncio
async def test_provider_timeout_marks_job_failed(image_factory):
    pipeline, status_store, storage = build_pipeline()
    remover = AsyncMock(side_effect=BackgroundRemovalTimeoutError("remove_bg", 60))

    with pytest.raises(BackgroundRemovalTimeoutError) as exc_info:
        await pipeline.run(image_factory(10, 10), "job-1", remover)

    assert exc_info.value.phase == "background_removal"
    status_store.mark_processing.assert_awaited_once_with("job-1")
    status_store.mark_completed.assert_not_awaited()
    job_id, message, _ = status_store.mark_failed.await_args.args
    assert job_id == "job-1"
    assert message.startswith("Processing failed: ")
    assert "timeout" in message
    storage.upload.assert_not_awaited()


@pytest.mark.asyncio
async def test_deadline_aborts_slow_provider(image_factory):
    pipeline, status_store, _ = build_pipeline(deadline_seconds=0.05)

    async def slow(data: bytes) -> bytes:
        await asyncio.sleep(5)
        return data

    with pytest.raises(DeadlineExceededError):
        await pipeline.run(image_factory(10, 10), "job-1", slow)

    message = status_store.mark_failed.await_args.args[1]
    assert "timeout" in message
    status_store.mark_completed.assert_not_awaited()


@pytest.mark.asyncio
async def test_undecodable_provider_output_is_a_stage_error(image_factory):
    pipeline, status_store, _ = build_pipeline()

    with pytest.raises(PipelineStageError) as exc_info:
        await pipeline.run(image_factory(10, 10), "job-1", AsyncMock(return_value=b"not an image"))

    assert exc_info.value.phase == "flip"
    status_store.mark_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_persist_failure_marks_job_failed(image_factory):
    pipeline, status_store, storage = build_pipeline()
    storage.upload.side_effect = StorageError("bucket unavailable", bucket="processed-images")

    with pytest.raises(StorageError):
        await pipeline.run(image_factory(10, 10), "job-1", passthrough)

    assert status_store.mark_failed.await_args.args[1] == "Processing failed: bucket unavailable"
    storage.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_finalize_failure_removes_processed_blob(image_factory):
    pipeline, status_store, storage = build_pipeline()
    status_store.mark_completed.side_effect = DatabaseError("connection lost")

    with pytest.raises(DatabaseError):
        await pipeline.run(image_factory(10, 10), "job-1", passthrough)

    storage.delete.assert_awaited_once_with("processed-images", "2-processed.png")
    status_store.mark_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_terminal_job_is_not_run_again(image_factory):
    pipeline, status_store, storage = build_pipeline(status="completed")
    remover = AsyncMock()

    with pytest.raises(InvalidTransitionError):
        await pipeline.run(image_factory(10, 10), "job-1", remover)

    remover.assert_not_awaited()
    status_store.mark_processing.assert_not_awaited()
    status_store.mark_failed.assert_not_awaited()
    status_store.mark_completed.assert_not_awaited()


@pytest.mark.asyncio
async def test_processing_job_is_resumed_without_second_transition(image_factory):
    pipeline, status_store, _ = build_pipeline(status="processing")

    await pipeline.run(image_factory(10, 10), "job-1", passthrough)

    status_store.mark_processing.assert_not_awaited()
    status_store.mark_completed.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_as_interrupted(image_factory):
    pipeline, status_store, _ = build_pipeline()
    started = asyncio.Event()

    async def hang(data: bytes) -> bytes:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(pipeline.run(image_factory(10, 10), "job-1", hang))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert status_store.mark_failed.await_args.args[1] == "Processing failed: processing interrupted"


@pytest.mark.asyncio
async def test_run_job_downloads_original(image_factory):
    pipeline, status_store, storage = build_pipeline()
    storage.download.return_value = image_factory(12, 12)

    result = await pipeline.run_job("job-1", passthrough)

    storage.download.assert_awaited_once_with("original-images", "1-original.png")
    assert (result.width, result.height) == (12, 12)


@pytest.mark.asyncio
async def test_run_job_missing_original_fails_job():
    pipeline, status_store, storage = build_pipeline()
    storage.download.side_effect = StorageError("Failed to read 1-original.png: not found")

    with pytest.raises(StorageError):
        await pipeline.run_job("job-1", passthrough)

    status_store.mark_failed.assert_awaited_once_with(
        "job-1", "Processing failed: Failed to read 1-original.png: not found"
    )
    status_store.mark_processing.assert_not_awaited()
