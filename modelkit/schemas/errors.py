"""Structured error payloads.

Format: { "error": { "code": str, "message": str, "detail": object | null } }
"""

from typing import Any

from pydantic import BaseModel


class FetchErrorDetail(BaseModel):
    """Context of a failed backend call."""

    endpoint: str
    method: str
    status_code: int
    body: dict[str, Any] | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: FetchErrorDetail | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
