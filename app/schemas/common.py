"""Common Pydantic schemas used across the application."""

from typing import Any

from fastapi import HTTPException, status
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    error: ErrorDetail


def raise_api_error(
    code: str,
    message: str,
    status_code: int = status.HTTP_400_BAD_REQUEST,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Raise an HTTPException with standardized error format.

    Args:
        code: Machine-readable error code (e.g., "DOMAIN_NOT_FOUND")
        message: Human-readable error message
        status_code: HTTP status code (default: 400)
        details: Optional additional error context
    """
    raise HTTPException(
        status_code=status_code,
        detail={
            "success": False,
            "error": {
                "code": code,
                "message": message,
                "details": details or {},
            },
        },
    )
