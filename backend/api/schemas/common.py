"""Schemas shared by every route module."""

from typing import Optional

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Page-based pagination for list endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    """Body of every error answer.

    ``execution_id`` and ``step_id`` are present when a run failed or a
    definition error concerns a single step.
    """

    detail: str
    request_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
