"""
DocVault Document Models — Pydantic views returned by the document service.

DocumentView is also the cache snapshot format: the service serialises it
(plus grantee ids) into Redis and validates it back on a hit.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentView(BaseModel):
    """Document metadata plus the grant list as of the last committed write."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    original_name: str = Field(max_length=255)
    size: int = Field(ge=0)
    mime_type: str
    content_hash: Optional[str] = None
    storage_key: str
    is_public: bool = False
    access_token: str
    version: int = 1
    created_at: datetime
    updated_at: datetime
    grant_logins: List[str] = Field(default_factory=list)
    grantee_ids: List[str] = Field(default_factory=list)

    def is_readable_by(self, user_id: Optional[str]) -> bool:
        """Owner, grantee or public. Anonymous callers (None) see public only."""
        if self.is_public:
            return True
        if user_id is None:
            return False
        return self.owner_id == user_id or user_id in self.grantee_ids


class ResolvedDocument(BaseModel):
    document: DocumentView
    download_url: Optional[str] = None
    cached: bool = False


class CreatedDocument(BaseModel):
    document: DocumentView
    upload_url: str


class DocumentPage(BaseModel):
    items: List[DocumentView] = Field(default_factory=list)
    next_cursor: Optional[str] = None
