"""
API Request/Response Schemas
"""

from app.schemas.common import (
    ErrorDetail,
    ErrorResponse,
    SingleResponse,
    ListResponse,
    ERROR_RESPONSES
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "SingleResponse",
    "ListResponse",
    "ERROR_RESPONSES",
]
