"""Pydantic schemas for structured error payloads."""

from modelkit.schemas.errors import ErrorDetail, ErrorResponse, FetchErrorDetail

__all__ = ["ErrorDetail", "ErrorResponse", "FetchErrorDetail"]
