"""
Pydantic models for API request and response validation.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


#######################################################################
## Response Models
#######################################################################

class HealthResponse(BaseModel):
    """Response model for the lightweight health endpoint."""
    status: str = Field(..., description="healthy, stopping or unhealthy")
    store_open: bool = Field(..., description="Whether the store handle is open")


class NodeRuntimeInfo(BaseModel):
    """Node.js runtime detected at startup."""
    version: str = Field(..., description="Node.js version")
    registry: str = Field(..., description="npm registry URL")


class StatusResponse(BaseModel):
    """Response model for system status endpoint."""
    mode: str = Field(..., description="development or production")
    debug: bool = Field(..., description="Whether debug mode is active")
    cdn_domain: str = Field(..., description="Public CDN domain (empty in development)")
    node: NodeRuntimeInfo = Field(..., description="Node.js runtime information")
    started_at: datetime = Field(..., description="When bootstrap completed")
    uptime_seconds: float = Field(..., description="Seconds since bootstrap completed")
    store_open: bool = Field(..., description="Whether the store handle is open")


class ErrorResponse(BaseModel):
    """Standard error response model."""
    success: bool = Field(False, description="Always false for error responses")
    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict] = Field(None, description="Additional error details")
