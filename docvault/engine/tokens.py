"""
DocVault Token Issuer — access/refresh token pairs.

Access tokens are JWTs signed with one process-wide symmetric secret. The
algorithm is fixed by configuration and checked against the token header
before decoding, so a token signed with any other algorithm (including
"none") is rejected outright.

Refresh tokens are 32 random bytes, base64-encoded for the client. Only a
bcrypt hash is stored, in a RefreshToken record that the caller persists.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

from docvault.db.base import new_id
from docvault.db.models import RefreshToken
from docvault.engine.errors import AccessTokenExpiredError, InvalidSignatureError

logger = logging.getLogger("docvault.engine.tokens")

REFRESH_SECRET_BYTES = 32


@dataclass(frozen=True)
class Claims:
    user_id: str
    refresh_token_id: str
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokensPair:
    access_token: str
    refresh_token: str

    def to_dict(self) -> Dict[str, str]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}


@dataclass(frozen=True)
class IssuedPair:
    """A token pair plus its unsaved RefreshToken record."""
    tokens: TokensPair
    record: RefreshToken
    claims: Claims


class TokenIssuer:
    """
    Mints and verifies tokens.

    Does not touch the database: verification proves the signature and
    expiry only. Whether the referenced refresh record is still live is the
    session protocol's concern.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS512",
        issuer: str = "docvault",
        access_ttl: float = 900,
        refresh_ttl: float = 30 * 24 * 3600,
        bcrypt_rounds: int = 12,
    ):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret = secret_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._access_ttl = timedelta(seconds=access_ttl)
        self._refresh_ttl = timedelta(seconds=refresh_ttl)
        self._bcrypt_rounds = bcrypt_rounds

    @classmethod
    def from_config(cls, config) -> "TokenIssuer":
        return cls(
            secret_key=config.jwt.secret_key,
            algorithm=config.jwt.algorithm,
            issuer=config.jwt.issuer,
            access_ttl=config.jwt.access_ttl_seconds,
            refresh_ttl=config.jwt.refresh_ttl_seconds,
            bcrypt_rounds=config.security.bcrypt_rounds,
        )

    @property
    def algorithm(self) -> str:
        return self._algorithm

    # -------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------

    def issue_pair(
        self,
        user_id: str,
        is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> IssuedPair:
        now = now or datetime.now(timezone.utc)

        secret = base64.b64encode(secrets.token_bytes(REFRESH_SECRET_BYTES)).decode("ascii")
        record = RefreshToken(
            id=new_id(),
            user_id=user_id,
            token_hash=self.hash_refresh_secret(secret),
            expire_at=now + self._refresh_ttl,
            used=False,
            created_at=now,
        )

        claims = Claims(
            user_id=user_id,
            refresh_token_id=record.id,
            is_admin=is_admin,
            issued_at=now,
            expires_at=now + self._access_ttl,
        )
        access_token = self.sign(claims)
        return IssuedPair(TokensPair(access_token, secret), record, claims)

    def sign(self, claims: Claims) -> str:
        payload: Dict[str, Any] = {
            "iss": self._issuer,
            "user_id": claims.user_id,
            "refresh_token_id": claims.refresh_token_id,
            "is_admin": claims.is_admin,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def hash_refresh_secret(self, secret: str) -> str:
        return bcrypt.hashpw(
            secret.encode("utf-8"), bcrypt.gensalt(rounds=self._bcrypt_rounds)
        ).decode("utf-8")

    # -------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------

    def verify(self, token: str) -> Claims:
        """
        Verify signature, algorithm, issuer and expiry.

        Raises:
            InvalidSignatureError: malformed token, wrong algorithm or signature.
            AccessTokenExpiredError: past ``exp``.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidSignatureError(f"Malformed access token: {e}") from e

        if header.get("alg") != self._algorithm:
            raise InvalidSignatureError(
                "Unexpected signing algorithm",
                algorithm=header.get("alg"),
            )

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "user_id", "refresh_token_id"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AccessTokenExpiredError("Access token expired") from e
        except jwt.PyJWTError as e:
            raise InvalidSignatureError(f"Access token rejected: {e}") from e

        return Claims(
            user_id=str(payload["user_id"]),
            refresh_token_id=str(payload["refresh_token_id"]),
            is_admin=bool(payload.get("is_admin", False)),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    @staticmethod
    def verify_refresh_secret(secret: str, token_hash: str) -> bool:
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), token_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored refresh token hash is not a valid bcrypt hash")
            return False
