"""Declarative descriptors for outbound API calls.

A descriptor is an immutable value built per call. The request kind decides
how the backend client decodes the response:
- BackendAPIRequest: JSON, any value
- BackendAPIObjectRequest: JSON object, optionally unwrapped at `object_key`
- BackendAPIDataRequest: raw bytes
- BackendAPIHTMLRequest: text
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


class Method(str, Enum):
    """HTTP method of a request."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"


# Methods whose parameters travel in the query string.
QUERY_METHODS = frozenset({Method.GET, Method.HEAD, Method.DELETE})


def default_headers() -> dict[str, str]:
    """Headers used when a request does not set its own."""
    return {"Content-Type": FORM_CONTENT_TYPE}


@dataclass(frozen=True)
class BackendAPIRequest:
    """One outbound API call.

    Args:
        endpoint: Path relative to the backend base URL (or an absolute URL).
        method: HTTP method.
        parameters: Query or body parameters, depending on method and content type.
        headers: Request headers. Defaults to form-encoded content type.
    """

    endpoint: str
    method: Method = Method.GET
    parameters: Mapping[str, Any] | None = None
    headers: Mapping[str, str] | None = field(default_factory=default_headers)

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", Method(self.method))
        if self.parameters is not None:
            object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        if self.headers is not None:
            object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @property
    def content_type(self) -> str:
        """Lower-cased media type from the Content-Type header, without parameters."""
        for key, value in (self.headers or {}).items():
            if key.lower() == "content-type":
                return value.split(";", 1)[0].strip().lower()
        return ""

    @property
    def is_json_body(self) -> bool:
        return self.content_type == JSON_CONTENT_TYPE or self.content_type.endswith("+json")

    def httpx_arguments(self) -> dict[str, Any]:
        """Keyword arguments for `httpx.AsyncClient.request`.

        Parameters go in the query string for GET/HEAD/DELETE, in a JSON body
        when the content type is JSON, and URL-encoded in the body otherwise.
        """
        kwargs: dict[str, Any] = {"headers": dict(self.headers or {})}
        if not self.parameters:
            return kwargs
        params = dict(self.parameters)
        if self.method in QUERY_METHODS:
            kwargs["params"] = params
        elif self.is_json_body:
            kwargs["json"] = params
        else:
            kwargs["data"] = params
        return kwargs


@dataclass(frozen=True)
class BackendAPIObjectRequest(BackendAPIRequest):
    """Request whose response is a JSON object, unwrapped at `object_key` when set."""

    object_key: str | None = None


@dataclass(frozen=True)
class BackendAPIDataRequest(BackendAPIRequest):
    """Request returning the raw response bytes instead of JSON."""


@dataclass(frozen=True)
class BackendAPIHTMLRequest(BackendAPIRequest):
    """Request returning the response body as text."""
