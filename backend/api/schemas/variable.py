"""Workflow variable schemas."""

from pydantic import BaseModel, Field
from typing import Any, Optional


class VariableSet(BaseModel):
    """Create or replace a variable (unique per tenant, workflow and name)."""

    name: str = Field(min_length=1, description="Variable name, referenced as {{name}}")
    value: Any = Field(default=None, description="Value; checked against the declared type")
    type: str = Field(default="string", description="string, number, boolean, json, secret, file, reference")
    workflow_id: Optional[str] = Field(default=None, description="Owning workflow; omit for a tenant-global variable")
    is_secret: bool = Field(default=False, description="Encrypt at rest and mask on read")
    description: Optional[str] = None


class VariableResponse(BaseModel):
    """Variable as shown on read paths; secret values are masked."""

    id: str
    name: str
    value: Optional[str] = None
    type: str
    workflow_id: Optional[str] = None
    is_secret: bool
    description: Optional[str] = None
