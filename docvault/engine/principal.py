"""
DocVault Principal — who is making a request.

Resolved once at the boundary (SessionProtocol.authenticate) and passed to
every service call as an explicit argument. Three kinds:

    Principal.user(...)    — a signed-in user (may carry is_admin from claims)
    Principal.admin()      — the shared admin token; no user row behind it
    Principal.anonymous()  — no credentials
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

USER = "user"
ADMIN = "admin"
ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Principal:
    kind: str
    user_id: Optional[str] = None
    refresh_token_id: Optional[str] = None
    is_admin: bool = False

    @classmethod
    def user(
        cls,
        user_id: str,
        refresh_token_id: Optional[str] = None,
        is_admin: bool = False,
    ) -> "Principal":
        return cls(USER, user_id=user_id, refresh_token_id=refresh_token_id, is_admin=is_admin)

    @classmethod
    def admin(cls) -> "Principal":
        return cls(ADMIN, is_admin=True)

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(ANONYMOUS)

    @property
    def is_anonymous(self) -> bool:
        return self.kind == ANONYMOUS

    @property
    def has_admin_rights(self) -> bool:
        return self.kind == ADMIN or (self.kind == USER and self.is_admin)

    def is_user(self, user_id: str) -> bool:
        return self.kind == USER and self.user_id == user_id

    def __str__(self) -> str:
        if self.kind == USER:
            return f"user:{self.user_id}"
        return self.kind
