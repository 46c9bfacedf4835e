"""
Background Removal Client

One capability, remove_background(bytes) -> bytes, over interchangeable
providers:
- remove_bg: remove.bg HTTP API (primary)
- clipdrop: Clipdrop HTTP API (alternative)
- mock: returns the input unchanged (tests, offline development)

The provider is chosen once, when the service is constructed. A failed call
is final; nothing here retries.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, Type

import httpx

from bgflip.core.config import BackgroundRemovalConfig
from bgflip.core.exceptions import (
    BackgroundRemovalError,
    BackgroundRemovalTimeoutError,
    ConfigurationError,
)
from bgflip.core.logging import get_logger
from bgflip.core.metrics import record_background_removal_call

logger = get_logger(__name__)

MIN_API_KEY_LENGTH = 8

# Credential rejections, treated as misconfiguration by the development fallback
CREDENTIAL_REJECTED_STATUSES = (401, 403)


# =============================================================================
# Providers
# =============================================================================

class BackgroundRemovalProvider(ABC):
    """Strategy interface for a segmentation provider."""

    name: str = "provider"
    requires_api_key: bool = True

    @abstractmethod
    async def remove_background(self, image_bytes: bytes, timeout_seconds: float) -> bytes:
        """Return the image with its background made transparent."""


class HTTPBackgroundRemovalProvider(BackgroundRemovalProvider):
    """Multipart POST of the image to a provider endpoint with an API key header."""

    api_key_header = "X-Api-Key"

    def __init__(
        self,
        api_key: str,
        api_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.transport = transport

    def form_fields(self) -> Dict[str, str]:
        return {}

    def error_message(self, response: httpx.Response) -> str:
        return f"{self.name} API error: {response.status_code} - {response.reason_phrase}"

    async def _post(self, image_bytes: bytes, timeout_seconds: float) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=self.transport
        ) as client:
            return await client.post(
                self.api_url,
                headers={self.api_key_header: self.api_key},
                files={"image_file": ("image.png", image_bytes, "image/png")},
                data=self.form_fields(),
            )

    async def remove_background(self, image_bytes: bytes, timeout_seconds: float) -> bytes:
        if not self.api_key:
            raise BackgroundRemovalError(
                f"{self.name} API key is not configured",
                service=self.name,
            )

        logger.info("background_removal_request", provider=self.name, input_size=len(image_bytes))

        try:
            response = await asyncio.wait_for(
                self._post(image_bytes, timeout_seconds),
                timeout=timeout_seconds
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            record_background_removal_call(self.name, "timeout")
            raise BackgroundRemovalTimeoutError(self.name, timeout_seconds)
        except httpx.ConnectError as e:
            record_background_removal_call(self.name, "network_error")
            raise BackgroundRemovalError(
                f"{self.name} is unreachable: {e}",
                service=self.name,
                details={"unreachable": True}
            )
        except httpx.TransportError as e:
            record_background_removal_call(self.name, "network_error")
            raise BackgroundRemovalError(f"{self.name} network error: {e}", service=self.name)

        if response.status_code != 200:
            record_background_removal_call(self.name, "rejected")
            raise BackgroundRemovalError(
                self.error_message(response),
                service=self.name,
                http_status=response.status_code
            )

        record_background_removal_call(self.name, "success")
        logger.info(
            "background_removal_response",
            provider=self.name,
            output_size=len(response.content)
        )
        return response.content


class RemoveBgProvider(HTTPBackgroundRemovalProvider):
    """remove.bg API."""

    name = "remove_bg"
    api_key_header = "X-Api-Key"

    def __init__(self, api_key: str, api_url: str, size: str = "auto", **kwargs):
        super().__init__(api_key, api_url, **kwargs)
        self.size = size

    def form_fields(self) -> Dict[str, str]:
        return {"size": self.size or "auto"}

    def error_message(self, response: httpx.Response) -> str:
        fallback = f"remove.bg API error: {response.status_code} - {response.reason_phrase}"
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            return fallback
        if errors and isinstance(errors[0], dict) and errors[0].get("title"):
            return f"remove.bg API error: {errors[0]['title']}"
        return fallback


class ClipdropProvider(HTTPBackgroundRemovalProvider):
    """Clipdrop remove-background API."""

    name = "clipdrop"
    api_key_header = "x-api-key"

    def error_message(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except ValueError:
            error = None
        if error:
            return f"Clipdrop API error: {error}"
        return f"Clipdrop API error: {response.status_code} - {response.reason_phrase}"


class MockProvider(BackgroundRemovalProvider):
    """Returns the input unchanged."""

    name = "mock"
    requires_api_key = False

    async def remove_background(self, image_bytes: bytes, timeout_seconds: float) -> bytes:
        logger.warning("background_removal_mocked", input_size=len(image_bytes))
        record_background_removal_call(self.name, "success")
        return image_bytes


PROVIDERS: Dict[str, Type[HTTPBackgroundRemovalProvider]] = {
    "remove_bg": RemoveBgProvider,
    "clipdrop": ClipdropProvider,
}

SUPPORTED_SERVICES = tuple(PROVIDERS) + ("mock",)


# =============================================================================
# Service
# =============================================================================

class BackgroundRemovalService:
    """
    Selects a provider from BackgroundRemovalConfig and exposes
    remove_background(bytes) -> bytes.

    Outside production a provider without an API key is replaced by the mock
    up front. In development (dev_fallback) an unreachable provider or a
    rejected credential falls back to the mock at call time as well.
    """

    def __init__(
        self,
        config: BackgroundRemovalConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self.provider = self._select_provider(transport)
        self._mock = MockProvider()

    def _select_provider(self, transport: Optional[httpx.AsyncBaseTransport]) -> BackgroundRemovalProvider:
        service = self.config.service
        provider_cls = PROVIDERS.get(service)

        if service == "mock" or provider_cls is None:
            if provider_cls is None and service != "mock":
                logger.warning("background_removal_unknown_service", service=service)
            return MockProvider()

        if not self.config.api_key and not self.config.production:
            logger.warning(
                "background_removal_using_mock",
                service=service,
                reason="no API key configured outside production"
            )
            return MockProvider()

        kwargs = {"transport": transport}
        if provider_cls is RemoveBgProvider:
            kwargs["size"] = self.config.size
        return provider_cls(self.config.api_key, self.config.api_url, **kwargs)

    def validate_config(self) -> Tuple[bool, List[str]]:
        """Check provider selection and credential; only production enforces a credential."""
        errors: List[str] = []
        service = self.config.service

        if service not in SUPPORTED_SERVICES:
            errors.append(f"Unsupported service: {service}")

        if self.config.production and service in PROVIDERS:
            api_key = self.config.api_key or ""
            if not api_key:
                errors.append(f"{service} API key is required in production")
            elif api_key != api_key.strip() or any(ch.isspace() for ch in api_key) \
                    or len(api_key) < MIN_API_KEY_LENGTH:
                errors.append(f"{service} API key is invalid")

        return not errors, errors

    def ensure_configured(self):
        """Raise ConfigurationError when validate_config reports problems."""
        valid, errors = self.validate_config()
        if not valid:
            raise ConfigurationError(
                f"Service configuration error: {', '.join(errors)}",
                errors=errors
            )

    def get_service_info(self) -> Dict[str, object]:
        valid, errors = self.validate_config()
        return {
            "service": self.config.service,
            "has_api_key": bool(self.config.api_key),
            "is_production": self.config.production,
            "valid": valid,
            "errors": errors,
        }

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def _can_fall_back(self, error: BackgroundRemovalError) -> bool:
        if not self.config.dev_fallback or isinstance(error, BackgroundRemovalTimeoutError):
            return False
        return bool(error.details.get("unreachable")) \
            or error.http_status in CREDENTIAL_REJECTED_STATUSES

    async def remove_background(self, image_bytes: bytes) -> bytes:
        try:
            return await self.provider.remove_background(image_bytes, self.config.timeout_seconds)
        except BackgroundRemovalError as e:
            if self._can_fall_back(e):
                logger.warning(
                    "background_removal_fallback_to_mock",
                    provider=self.provider.name,
                    error=e.message
                )
                record_background_removal_call(self.provider.name, "fallback")
                return await self._mock.remove_background(image_bytes, self.config.timeout_seconds)
            raise

    __call__ = remove_background
