"""
Utility functions for API operations.
"""

import traceback

from fastapi.responses import JSONResponse

from .models import ErrorResponse
from .exceptions import APIException


def create_error_response(exception: Exception, debug: bool = False) -> JSONResponse:
    """
    Create a standardized error response from an exception.

    Args:
        exception: The exception that occurred
        debug: Include the traceback in the response body

    Returns:
        JSONResponse with standardized error format
    """
    if isinstance(exception, APIException):
        error_response = ErrorResponse(
            error=exception.error_type,
            message=exception.detail,
            details=exception.details
        )
        return JSONResponse(
            status_code=exception.status_code,
            content=error_response.model_dump()
        )

    if debug:
        # Include full traceback for debugging
        full_traceback = "".join(
            traceback.format_exception(type(exception), exception, exception.__traceback__)
        )
        error_response = ErrorResponse(
            error="InternalServerError",
            message=str(exception),
            details={
                "error_type": type(exception).__name__,
                "traceback": full_traceback
            }
        )
    else:
        # Generic error for production
        error_response = ErrorResponse(
            error="InternalServerError",
            message="An unexpected error occurred",
            details={"error_type": type(exception).__name__}
        )

    return JSONResponse(
        status_code=500,
        content=error_response.model_dump()
    )
