"""
Gemini File Search REST client.

Provisions and removes File Search stores and uploads documents into them.
All calls are async so request handlers never block on the provider.
"""
import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

API_VERSION = "v1beta"


class FileSearchError(Exception):
    """Raised when a File Search API call fails."""
    pass


def _error_message(error: httpx.HTTPStatusError) -> str:
    try:
        return error.response.json().get("error", {}).get("message", str(error))
    except (ValueError, AttributeError):
        return str(error)


def _json(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body, raising FileSearchError for anything else."""
    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"File Search returned a non-JSON body: {e}")
        raise FileSearchError("File Search API returned an invalid response") from e
    if not isinstance(data, dict):
        logger.error(f"File Search returned {type(data).__name__} instead of an object")
        raise FileSearchError("File Search API returned an invalid response")
    return data


class FileSearchClient:
    """Client for the Gemini File Search store endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, 'GEMINI_API_KEY', '')
        self.base_url = (base_url or getattr(settings, 'GEMINI_BASE_URL', 'https://generativelanguage.googleapis.com')).rstrip('/')
        self.timeout = timeout or getattr(settings, 'GEMINI_TIMEOUT', 120)
        self._transport = transport

        if not self.api_key:
            raise FileSearchError("GEMINI_API_KEY not configured")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=float(self.timeout),
            transport=self._transport,
            headers={"x-goog-api-key": self.api_key},
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response

        except httpx.HTTPStatusError as e:
            logger.error(f"File Search HTTP error: {e}")
            raise FileSearchError(f"File Search API error: {_error_message(e)}") from e
        except httpx.TimeoutException as e:
            logger.error("File Search request timed out")
            raise FileSearchError("File Search API timed out") from e
        except httpx.RequestError as e:
            logger.error(f"File Search connection error: {e}")
            raise FileSearchError("Could not connect to File Search API") from e

    async def create_store(self, display_name: str) -> str:
        """
        Create a File Search store.

        Returns:
            The store resource name, e.g. ``fileSearchStores/abc123``
        """
        response = await self._request(
            "POST",
            f"{self.base_url}/{API_VERSION}/fileSearchStores",
            json={"displayName": display_name},
        )
        name = _json(response).get("name")
        if not name:
            raise FileSearchError("Failed to create File Search store")

        logger.info(f"Created File Search store {name} ({display_name})")
        return name

    async def get_store(self, name: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/{API_VERSION}/{name}")
        return _json(response)

    async def delete_store(self, name: str) -> None:
        """Delete a store and every document in it."""
        await self._request(
            "DELETE",
            f"{self.base_url}/{API_VERSION}/{name}",
            params={"force": "true"},
        )
        logger.info(f"Deleted File Search store {name}")

    async def upload_document(
        self,
        store_name: str,
        filename: str,
        content: bytes,
        mime_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Upload a file into a store using the resumable upload protocol.

        Returns:
            The long-running import operation returned by the API
        """
        body: Dict[str, Any] = {"displayName": filename}
        if metadata:
            body["customMetadata"] = [
                {"key": key, "stringValue": str(value)}
                for key, value in metadata.items()
            ]

        start = await self._request(
            "POST",
            f"{self.base_url}/upload/{API_VERSION}/{store_name}:uploadToFileSearchStore",
            json=body,
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(content)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
        )
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise FileSearchError("File Search upload session was not created")

        finish = await self._request(
            "POST",
            upload_url,
            content=content,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
        )
        operation = _json(finish)
        logger.info(f"Uploaded {filename} ({len(content)} bytes) to {store_name}")
        return operation

    async def get_operation(self, name: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/{API_VERSION}/{name}")
        return _json(response)

    async def wait_for_operation(
        self,
        operation: Dict[str, Any],
        poll_interval: float = 2.0,
        timeout: float = 60.0,
    ) -> Dict[str, Any]:
        """
        Poll an import operation until it is done or the timeout passes.

        Returns the last operation seen; check ``done`` for completion.

        Raises:
            FileSearchError: If the operation finished with an error
        """
        deadline = time.monotonic() + timeout
        while not operation.get("done"):
            name = operation.get("name")
            if not name or time.monotonic() >= deadline:
                return operation
            await asyncio.sleep(poll_interval)
            operation = await self.get_operation(name)

        if operation.get("error"):
            message = operation["error"].get("message", "unknown error")
            raise FileSearchError(f"File Search import failed: {message}")
        return operation

    async def delete_document(self, document_name: str) -> None:
        await self._request(
            "DELETE",
            f"{self.base_url}/{API_VERSION}/{document_name}",
            params={"force": "true"},
        )
