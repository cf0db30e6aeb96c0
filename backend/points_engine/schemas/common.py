"""
Points Engine — Shared Response Schemas
========================================

What:  Error envelope and health payload shared by every router.
Why:   The global exception handlers in main.py all render ErrorResponse, so
       clients parse one error shape regardless of which route failed.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    What:  Consistent error envelope for every non-2xx response.
    Security: `details` carries only safe, client-actionable context
              (e.g. required vs available points), never stack traces or SQL.
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  Health check payload for load balancers and monitoring.

    The valuation model is non-critical: when it is down listings are priced
    by the fallback formula, so its failure only marks the service "degraded".
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    gemini: str = Field(
        description="Valuation model status: available, unavailable, circuit_open, disabled"
    )
    webhook_signing: str = Field(description="Payment webhook auth: enforced, insecure, rejecting")
    uptime_seconds: float = Field(description="Seconds since service started")
