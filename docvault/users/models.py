"""DocVault User Models — Pydantic views returned by the user service."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserView(BaseModel):
    """Account fields safe to return to clients (no password hash)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    login: str
    created_at: datetime
    updated_at: datetime


class UserPage(BaseModel):
    items: List[UserView] = Field(default_factory=list)
    next_cursor: Optional[str] = None
