import httpx
import pytest

from bgflip.core.config import BackgroundRemovalConfig
from bgflip.core.exceptions import (
    BackgroundRemovalError,
    BackgroundRemovalTimeoutError,
    ConfigurationError,
)
from bgflip.pipeline.background_removal import (
    BackgroundRemovalService,
    ClipdropProvider,
    MockProvider,
    RemoveBgProvider,
)

IMAGE = b"\x89PNG input bytes"
CUTOUT = b"\x89PNG cutout bytes"


def config(**overrides) -> BackgroundRemovalConfig:
    fields = dict(
        service="remove_bg",
        api_key="rb-test-key-123",
        api_url="https://api.remove.bg/v1.0/removebg",
        timeout_seconds=5.0,
    )
    fields.update(overrides)
    return BackgroundRemovalConfig(**fields)


def service_with(handler, **overrides) -> BackgroundRemovalService:
    return BackgroundRemovalService(config(**overrides), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_remove_bg_success_sends_key_and_image():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["api_key"] = request.headers.get("X-Api-Key")
        seen["body"] = request.content
        return httpx.Response(200, content=CUTOUT)

    service = service_with(handler)

    assert service.provider_name == "remove_bg"
    assert await service.remove_background(IMAGE) == CUTOUT
    assert seen["api_key"] == "rb-test-key-123"
    assert b'name="image_file"' in seen["body"]
    assert b'name="size"' in seen["body"]
    assert IMAGE in seen["body"]


@pytest.mark.asyncio
async def test_remove_bg_error_uses_provider_title():
    def handler(request):
        return httpx.Response(400, json={"errors": [{"title": "Could not identify foreground in image"}]})

    with pytest.raises(BackgroundRemovalError) as exc_info:
        await service_with(handler).remove_background(IMAGE)

    assert exc_info.value.message == "remove.bg API error: Could not identify foreground in image"
    assert exc_info.value.http_status == 400
    assert exc_info.value.code == 502


@pytest.mark.asyncio
async def test_clipdrop_error_message():
    def handler(request):
        assert request.headers.get("x-api-key") == "cd-test-key-123"
        return httpx.Response(402, json={"error": "Not enough credits"})

    service = service_with(
        handler,
        service="clipdrop",
        api_key="cd-test-key-123",
        api_url="https://clipdrop-api.co/remove-background/v1",
    )

    assert isinstance(service.provider, ClipdropProvider)
    with pytest.raises(BackgroundRemovalError, match="Clipdrop API error: Not enough credits"):
        await service.remove_background(IMAGE)


@pytest.mark.asyncio
async def test_timeout_is_reported_as_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(BackgroundRemovalTimeoutError) as exc_info:
        await service_with(handler).remove_background(IMAGE)

    assert "timeout" in exc_info.value.message
    assert exc_info.value.code == 504


@pytest.mark.asyncio
async def test_timeout_never_falls_back_to_mock():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(BackgroundRemovalTimeoutError):
        await service_with(handler, dev_fallback=True).remove_background(IMAGE)


@pytest.mark.asyncio
async def test_unreachable_provider_falls_back_in_development():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await service_with(handler, dev_fallback=True).remove_background(IMAGE) == IMAGE


@pytest.mark.asyncio
async def test_rejected_credential_falls_back_in_development():
    def handler(request):
        return httpx.Response(403, json={"errors": [{"title": "Forbidden"}]})

    assert await service_with(handler, dev_fallback=True).remove_background(IMAGE) == IMAGE


@pytest.mark.asyncio
async def test_unreachable_provider_fails_without_fallback():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackgroundRemovalError) as exc_info:
        await service_with(handler).remove_background(IMAGE)
    assert exc_info.value.details["unreachable"] is True


@pytest.mark.asyncio
async def test_mock_returns_input_unchanged():
    service = BackgroundRemovalService(config(service="mock", api_key=""))
    assert isinstance(service.provider, MockProvider)
    assert await service(IMAGE) == IMAGE


def test_missing_key_outside_production_selects_mock():
    service = BackgroundRemovalService(config(api_key="", production=False))
    assert service.provider_name == "mock"
    assert service.validate_config() == (True, [])


def test_missing_key_in_production_is_invalid():
    service = BackgroundRemovalService(config(api_key="", production=True))
    assert isinstance(service.provider, RemoveBgProvider)

    valid, errors = service.validate_config()
    assert not valid
    assert errors == ["remove_bg API key is required in production"]

    with pytest.raises(ConfigurationError, match="Service configuration error"):
        service.ensure_configured()


@pytest.mark.parametrize("api_key", ["bad key", "short", " rb-test-key-123"])
def test_malformed_key_in_production_is_invalid(api_key):
    valid, errors = BackgroundRemovalService(config(api_key=api_key, production=True)).validate_config()
    assert not valid
    assert errors == ["remove_bg API key is invalid"]


def test_unsupported_service_is_invalid():
    service = BackgroundRemovalService(config(service="photoroom"))
    assert service.provider_name == "mock"
    valid, errors = service.validate_config()
    assert not valid
    assert errors == ["Unsupported service: photoroom"]


def test_service_info_hides_key():
    info = BackgroundRemovalService(config(production=True)).get_service_info()
    assert info == {
        "service": "remove_bg",
        "has_api_key": True,
        "is_production": True,
        "valid": True,
        "errors": [],
    }
    assert "rb-test-key-123" not in repr(config())
