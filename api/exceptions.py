"""
Custom exceptions and error handling for the API module.
"""

from typing import Dict, Optional
from fastapi import HTTPException


class APIException(HTTPException):
    """Base exception for API-related errors."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        message: str,
        details: Optional[Dict] = None
    ):
        self.error_type = error_type
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class StoreUnavailableError(APIException):
    """Raised when a request touches the store after it was closed."""

    def __init__(self, message: str = "Store is closed"):
        super().__init__(
            status_code=503,
            error_type="StoreUnavailable",
            message=message,
        )


class RuntimeNotReadyError(APIException):
    """Raised when a request arrives before the runtime context is attached."""

    def __init__(self):
        super().__init__(
            status_code=503,
            error_type="RuntimeNotReady",
            message="Runtime is not initialized",
        )
