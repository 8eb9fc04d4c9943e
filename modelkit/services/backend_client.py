"""Backend client executing request descriptors over httpx.

Rules:
- One HTTP call per descriptor; no retry, no backoff
- Connection pooling is left to the httpx client
- Every failure (transport error, non-2xx status, undecodable body, missing
  object key) is raised as one BackendFetchError carrying the descriptor,
  the JSON body (if any), the underlying error and the status code
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from modelkit.schemas.errors import ErrorDetail, ErrorResponse, FetchErrorDetail
from modelkit.services.backend_request import (
    BackendAPIDataRequest,
    BackendAPIHTMLRequest,
    BackendAPIObjectRequest,
    BackendAPIRequest,
    Method,
)
from modelkit.settings import get_settings

logger = logging.getLogger("modelkit")

# Status code reported when no response was received.
NO_RESPONSE = 0


class MissingObjectKeyError(KeyError):
    """Object request response does not contain the expected key."""


class BackendFetchError(RuntimeError):
    """Failed backend call.

    Attributes:
        request: The descriptor that was executed.
        json: Response body when it decoded to a JSON object, else None.
        error: Underlying transport, status or decoding error.
        code: HTTP status code, or 0 when no response was received.
    """

    def __init__(
        self,
        request: BackendAPIRequest,
        json: dict[str, Any] | None,
        error: Exception,
        code: int,
    ) -> None:
        super().__init__(f"{request.method.value} {request.endpoint} failed ({code}): {error}")
        self.request = request
        self.json = json
        self.error = error
        self.code = code

    def to_error_response(self) -> ErrorResponse:
        """Render the failure in the structured error format."""
        return ErrorResponse(
            error=ErrorDetail(
                code="BACKEND_FETCH_ERROR",
                message=str(self.error),
                detail=FetchErrorDetail(
                    endpoint=self.request.endpoint,
                    method=self.request.method.value,
                    status_code=self.code,
                    body=self.json,
                ),
            )
        )


class BackendService:
    """Client for the configured REST backend."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client; missing values come from settings."""
        settings = get_settings()
        self.base_url = base_url if base_url is not None else settings.backend_base_url
        self.timeout = timeout if timeout is not None else settings.backend_timeout
        self.debug = settings.backend_debug
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> BackendService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def fetch(self, request: BackendAPIRequest) -> Any:
        """Execute one request and decode its response.

        Args:
            request: Descriptor of the call.

        Returns:
            Decoded JSON value, the value at `object_key` for object requests,
            bytes for data requests, or text for HTML requests. Plain and
            object requests return None for HEAD calls and empty bodies.

        Raises:
            BackendFetchError: On any transport, status or decoding failure.
        """
        client = await self._get_client()
        logger.info(f"Backend {request.method.value} {request.endpoint}")

        try:
            response = await client.request(
                request.method.value,
                request.endpoint,
                **request.httpx_arguments(),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Backend transport error for {request.endpoint}: {e}")
            raise BackendFetchError(request, None, e, NO_RESPONSE) from e

        body = _json_object_or_none(response)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Backend API error: {response.status_code} - {response.text[:200]}")
            raise BackendFetchError(request, body, e, response.status_code) from e

        if isinstance(request, BackendAPIDataRequest):
            return response.content
        if isinstance(request, BackendAPIHTMLRequest):
            return response.text

        if request.method is Method.HEAD or not response.content:
            return None

        try:
            result = response.json()
        except ValueError as e:
            logger.error(f"Backend returned invalid JSON for {request.endpoint}: {e}")
            raise BackendFetchError(request, None, e, response.status_code) from e

        if self.debug:
            logger.info(f"Backend response for {request.endpoint}: {json.dumps(result)[:5000]}")

        if isinstance(request, BackendAPIObjectRequest):
            return _unwrap_object(request, result, body, response.status_code)
        return result


def _json_object_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _unwrap_object(
    request: BackendAPIObjectRequest,
    result: Any,
    body: dict[str, Any] | None,
    code: int,
) -> Any:
    if request.object_key is None:
        return result
    if body is None or request.object_key not in body:
        error = MissingObjectKeyError(request.object_key)
        logger.error(f"Backend response for {request.endpoint} has no '{request.object_key}' key")
        raise BackendFetchError(request, body, error, code)
    return body[request.object_key]
