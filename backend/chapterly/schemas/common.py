"""
Chapterly Backend — Shared Pydantic Schemas
=============================================

What:  Base model for camelCase API bodies, the error body and /health.
Why:   The mobile and web clients speak camelCase (`userId`, `newTotal`);
       Python code stays snake_case. The alias generator bridges the two.
How:   CamelModel accepts either spelling on input (populate_by_name) and
       FastAPI serializes response models by alias, i.e. camelCase.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """
    What:  Body of every non-2xx response.
    Who:   Rendered by the global exception handlers in main.py.

    `required` / `current` are only present for insufficient-credit errors.
    """
    error: str = Field(description="Human-readable error message")
    code: str = Field(description="Machine-readable error code, e.g. 'insufficient_credits'")
    request_id: Optional[str] = Field(default=None, description="X-Request-ID of the failed request")
    required: Optional[int] = None
    current: Optional[int] = None


class HealthResponse(BaseModel):
    """Returned by GET /health. `database` degrades instead of failing the probe."""
    status: str = Field(description="Always 'ok' while the process is serving")
    message: str = Field(default="Backend is running")
    version: str
    database: str = Field(description="'connected' or 'disconnected'")
    uptime_seconds: float
