"""
DocVault Error Hierarchy — Structured exceptions for the session and document core.

Every error carries a structured context (user_id, document_id, ...) that is
serialisable to JSON for the security/execution logs. The boundary layer maps
errors to client responses through ``status_code`` and ``public_message`` so
that theft-detection outcomes and unknown identities never leak to clients.

Hierarchy:
    DocVaultError
    ├── AuthenticationError            — Login failed (401)
    │   ├── InvalidCredentialsError    — Wrong password
    │   └── UserNotFoundError          — Unknown login / target user
    ├── SessionError                   — Refresh/bearer failed (401)
    │   ├── InvalidAccessTokenError
    │   │   ├── InvalidSignatureError
    │   │   └── AccessTokenExpiredError
    │   ├── RefreshTokenNotFoundError
    │   ├── ReusedTokenError           — Theft signal
    │   ├── ExpiredTokenError
    │   ├── SessionHijackSuspectedError — Theft signal
    │   └── InvalidRefreshSecretError
    ├── AccessDeniedError              — Principal may not read/mutate (403)
    │   └── NotOwnerError
    ├── NotFoundError                  — Document missing (404)
    ├── ConflictError                  — Duplicate (409)
    ├── ValidationError                — Bad input (422)
    ├── StorageUnavailableError        — Object storage / cache down (503)
    ├── TransactionTimeoutError        — Deadline exceeded, rolled back (504)
    ├── ConfigError                    — Invalid docvault.yaml (500)
    └── InternalError                  — Anything else (500)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class DocVaultError(Exception):
    """
    Base error for all DocVault failures.
    All context is kept serialisable for the JSONL logs.
    """

    status_code: int = 500
    public_message: str = "internal error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.user_id: Optional[str] = context.get("user_id")
        self.document_id: Optional[str] = context.get("document_id")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "status_code": self.status_code,
            "user_id": self.user_id,
            "document_id": self.document_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("user_id", "document_id")
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_response(self) -> Dict[str, Any]:
        """Client-facing payload. Never includes the internal message."""
        return {"error": self.public_message, "status": self.status_code}

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.user_id:
            parts.append(f"user_id={self.user_id}")
        if self.document_id:
            parts.append(f"document_id={self.document_id}")
        return " | ".join(parts)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

class AuthenticationError(DocVaultError):
    """Login failed. Subclasses are distinct internally, identical externally."""
    status_code = 401
    public_message = "invalid login or password"


class InvalidCredentialsError(AuthenticationError):
    pass


class UserNotFoundError(AuthenticationError):
    """
    No user with the given login or id.

    Raised by login (where it must look like a wrong password) and by
    share/user lookups, where ``context['lookup']`` names the lookup.
    Only the login lookup answers 401; every other lookup is a plain 404.
    """

    def __init__(self, message: str, **context: Any):
        self.lookup: Optional[str] = context.get("lookup")
        if self.lookup != "login":
            self.status_code = 404
            self.public_message = "not found"
        super().__init__(message, **context)


# ---------------------------------------------------------------------------
# Session / refresh
# ---------------------------------------------------------------------------

class SessionError(DocVaultError):
    """Refresh or bearer authentication failed."""
    status_code = 401
    public_message = "unable to refresh session"

    def __init__(self, message: str, **context: Any):
        self.refresh_token_id: Optional[str] = context.get("refresh_token_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["refresh_token_id"] = self.refresh_token_id
        return d


class InvalidAccessTokenError(SessionError):
    public_message = "invalid access token"


class InvalidSignatureError(InvalidAccessTokenError):
    pass


class AccessTokenExpiredError(InvalidAccessTokenError):
    public_message = "access token expired"


class RefreshTokenNotFoundError(SessionError):
    pass


class ReusedTokenError(SessionError):
    """A burned refresh token was presented again. Treated as theft."""
    pass


class ExpiredTokenError(SessionError):
    pass


class SessionHijackSuspectedError(SessionError):
    """User agent mismatch on an otherwise valid token. The token is burned."""
    pass


class InvalidRefreshSecretError(SessionError):
    pass


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class AccessDeniedError(DocVaultError):
    status_code = 403
    public_message = "access denied"


class NotOwnerError(AccessDeniedError):
    pass


class NotFoundError(DocVaultError):
    status_code = 404
    public_message = "not found"


class ConflictError(DocVaultError):
    status_code = 409
    public_message = "conflict"


class ValidationError(DocVaultError):
    """Input validation failed. Includes field-level details when known."""
    status_code = 422
    public_message = "invalid request"

    def __init__(self, message: str, **context: Any):
        self.field: Optional[str] = context.get("field")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field
        return d


class StorageUnavailableError(DocVaultError):
    """Object storage call failed."""
    status_code = 503
    public_message = "storage unavailable"

    def __init__(self, message: str, **context: Any):
        self.storage_key: Optional[str] = context.get("storage_key")
        self.operation: Optional[str] = context.get("operation")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["storage_key"] = self.storage_key
        d["operation"] = self.operation
        return d


class TransactionTimeoutError(DocVaultError):
    """Transaction exceeded its deadline and was rolled back."""
    status_code = 504
    public_message = "request timed out"

    def __init__(self, message: str, **context: Any):
        self.deadline_seconds: Optional[float] = context.get("deadline_seconds")
        super().__init__(message, **context)


class ConfigError(DocVaultError):
    """Configuration error — invalid docvault.yaml."""
    pass


class InternalError(DocVaultError):
    pass
