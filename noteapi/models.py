"""Shared API response models."""

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail in the response body."""

    message: str
    type: str = "server_error"
    code: str | None = None


class ErrorResponse(BaseModel):
    """Error response wrapper."""

    error: ErrorDetail


class WriteResponse(BaseModel):
    """Acknowledgement returned by note writes."""

    ok: bool = True
    path: str
    etag: str
