"""
Async HTTP client for the images API.
"""

import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

API_PREFIX = "/api/v1/images"


class ApiClientError(Exception):
    """Raised for non-2xx responses; carries the server's error message."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ImagesApiClient:
    """
    Thin wrapper over httpx.AsyncClient for upload, status, delete and
    list-by-session. Responses are returned as the decoded camelCase JSON.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ImagesApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            message = body.get("error") if isinstance(body, dict) else None
            raise ApiClientError(
                message or f"Request failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return body

    async def upload(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        form = {"sessionId": session_id} if session_id else {}
        response = await self.client.post(
            API_PREFIX,
            files={"file": (filename, data, content_type)},
            data=form,
        )
        return self._json(response)

    async def upload_file(self, path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        file_path = Path(path)
        return await self.upload(file_path.read_bytes(), file_path.name, session_id=session_id)

    async def get_status(self, image_id: str) -> Dict[str, Any]:
        return self._json(await self.client.get(f"{API_PREFIX}/{image_id}"))

    async def delete(self, image_id: str) -> Dict[str, Any]:
        return self._json(await self.client.delete(f"{API_PREFIX}/{image_id}"))

    async def list_by_session(self, session_id: str) -> Dict[str, Any]:
        return self._json(await self.client.get(f"{API_PREFIX}/session/{session_id}"))
