"""
Common API response schemas
"""

from typing import Generic, TypeVar, Optional
from pydantic import BaseModel

T = TypeVar("T")


class ErrorDetail(BaseModel):
    """Error detail information"""
    code: str
    message: str
    details: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response"""
    success: bool = False
    error: ErrorDetail


class SingleResponse(BaseModel, Generic[T]):
    """Single item response"""
    success: bool = True
    data: T


class ListResponse(BaseModel, Generic[T]):
    """Non-paginated list response"""
    success: bool = True
    data: list[T]
    count: int


# Documented on endpoints that can reject a request
ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Job or contractor not found"},
    409: {"model": ErrorResponse, "description": "Rejected by an availability check"},
    422: {"model": ErrorResponse, "description": "Malformed input"},
    503: {"model": ErrorResponse, "description": "Storage unavailable after retries"},
}
