"""Response envelope models.

Success responses use ``{"data": ...}``; errors use ``{"error": {...}}``.
"""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class DataResponse(BaseModel, Generic[T]):
    """Standard response envelope for single resources.

    Usage:
        @router.post("/forgot-password")
        async def forgot_password(...) -> DataResponse[MessageData]:
            return DataResponse(data=MessageData(message="..."))
    """

    data: T


class MessageData(BaseModel):
    """Payload for endpoints that only report an outcome."""

    message: str


class ErrorDetail(BaseModel):
    """Error detail for response body.

    Attributes:
        code: Machine-readable error code (e.g., "RATE_LIMITED").
        message: Human-readable error message.
        details: Optional list of field-level errors (for validation).
    """

    code: str
    message: str
    details: list[dict] | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
