"""
DocVault Session Protocol — Login, refresh rotation, logout, bearer authentication.

Implements:
- SessionProtocol.login: password check, first token pair
- SessionProtocol.refresh: rotation with theft detection
- SessionProtocol.logout: burn a refresh token (idempotent)
- SessionProtocol.authenticate: bearer → Principal, once per request
- Password utilities (bcrypt)

Refresh check order:
    1. access token signature/expiry          → InvalidAccessTokenError
    2. refresh record exists                  → RefreshTokenNotFoundError
    3. record not used                        → ReusedTokenError (alert)
    4. record not expired                     → ExpiredTokenError
    5. same user agent, else burn             → SessionHijackSuspectedError (alert)
    6. IP changed                             → webhook in background, continue
    7. refresh secret matches (not burned)    → InvalidRefreshSecretError
    8. conditional mark-used, 0 rows          → ReusedTokenError
    9. new pair persisted in the same transaction as step 8
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

import bcrypt

from docvault.db.base import utcnow
from docvault.db.session import transaction
from docvault.engine.errors import (
    ExpiredTokenError,
    InvalidAccessTokenError,
    InvalidCredentialsError,
    InvalidRefreshSecretError,
    RefreshTokenNotFoundError,
    ReusedTokenError,
    SessionHijackSuspectedError,
    UserNotFoundError,
)
from docvault.engine.logging import log, log_security_event, log_session_event
from docvault.engine.principal import Principal
from docvault.engine.tokens import IssuedPair, TokenIssuer, TokensPair
from docvault.integrations.webhook import WebhookNotifier
from docvault.stores.credentials import CredentialStore
from docvault.stores.users import UserStore

logger = logging.getLogger("docvault.engine.security")


class SessionProtocol:
    """
    Orchestrates the refresh-token lifecycle over the Credential Store.

    Each step opens its own short transaction; the rotation (mark used +
    insert successor) is one transaction whose first statement is the
    conditional UPDATE, so concurrent refreshes of one token serialize on
    that row and exactly one wins.
    """

    def __init__(
        self,
        session_factory,
        issuer: TokenIssuer,
        credentials: Optional[CredentialStore] = None,
        users: Optional[UserStore] = None,
        notifier: Optional[WebhookNotifier] = None,
        admin_token: str = "",
        deadline: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._issuer = issuer
        self._credentials = credentials or CredentialStore()
        self._users = users or UserStore()
        self._notifier = notifier
        self._admin_token = admin_token
        self._deadline = deadline
        self._dummy_hash: Optional[str] = None

    # -------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------

    def login(
        self,
        login: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokensPair:
        """
        Authenticate with login + password and issue the first token pair.

        Raises:
            UserNotFoundError / InvalidCredentialsError — same public message.
        """
        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.find_by_login(session, login)
            if user is None:
                # Equalise timing with the wrong-password path
                verify_password(password, self._get_dummy_hash())
                log(log_session_event("login", None, user_agent=user_agent,
                                      ip_address=ip_address, success=False, error="unknown_login"))
                raise UserNotFoundError("Unknown login", lookup="login", login=login)

            if not verify_password(password, user.password_hash):
                log(log_session_event("login", user.id, user_agent=user_agent,
                                      ip_address=ip_address, success=False, error="invalid_password"))
                raise InvalidCredentialsError("Invalid password", user_id=user.id)

            issued = self.start_session(session, user.id, user_agent, ip_address)

        log(log_session_event("login", issued.claims.user_id, issued.record.id,
                              user_agent=user_agent, ip_address=ip_address))
        logger.info(f"User {issued.claims.user_id} logged in (token {issued.record.id})")
        return issued.tokens

    def start_session(
        self,
        session,
        user_id: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
        is_admin: bool = False,
        parent_id: Optional[str] = None,
    ) -> IssuedPair:
        """Issue a pair and persist its record inside the caller's transaction."""
        issued = self._issuer.issue_pair(user_id, is_admin=is_admin)
        issued.record.user_agent = user_agent
        issued.record.ip_address = ip_address
        issued.record.parent_id = parent_id
        self._credentials.insert(session, issued.record)
        return issued

    # -------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------

    def refresh(
        self,
        user_agent: Optional[str],
        ip_address: Optional[str],
        access_token: str,
        refresh_secret: str,
    ) -> TokensPair:
        """Rotate a token pair. See the module docstring for the check order."""
        try:
            claims = self._issuer.verify(access_token)
        except InvalidAccessTokenError as e:
            log(log_session_event("refresh", None, user_agent=user_agent,
                                  ip_address=ip_address, success=False, error=e.error_type))
            raise

        with transaction(self._session_factory, self._deadline) as session:
            record = self._credentials.find_by_id(session, claims.refresh_token_id)

        if record is None:
            raise RefreshTokenNotFoundError(
                "Refresh token not found",
                user_id=claims.user_id,
                refresh_token_id=claims.refresh_token_id,
            )
        if record.user_id != claims.user_id:
            raise InvalidAccessTokenError(
                "Access token subject does not own the refresh token",
                user_id=claims.user_id,
                refresh_token_id=record.id,
            )

        if record.used:
            self._alert("refresh_token_reused", record.user_id, record.id,
                        user_agent=user_agent, ip_address=ip_address)
            raise ReusedTokenError(
                "Refresh token already used",
                user_id=record.user_id,
                refresh_token_id=record.id,
            )

        if utcnow() > record.expire_at:
            raise ExpiredTokenError(
                "Refresh token expired",
                user_id=record.user_id,
                refresh_token_id=record.id,
            )

        if record.user_agent != user_agent:
            with transaction(self._session_factory, self._deadline) as session:
                self._credentials.mark_used(session, record.id, reason="user_agent_mismatch")
            self._alert("session_hijack_suspected", record.user_id, record.id,
                        level="ERROR", stored_user_agent=record.user_agent, user_agent=user_agent,
                        ip_address=ip_address)
            raise SessionHijackSuspectedError(
                "User agent changed; refresh token burned",
                user_id=record.user_id,
                refresh_token_id=record.id,
            )

        if record.ip_address != ip_address:
            self._notify_ip_change(record.user_id, ip_address, record.ip_address)

        if not self._issuer.verify_refresh_secret(refresh_secret, record.token_hash):
            log(log_session_event("refresh", record.user_id, record.id, user_agent=user_agent,
                                  ip_address=ip_address, success=False, error="invalid_secret"))
            raise InvalidRefreshSecretError(
                "Refresh secret mismatch",
                user_id=record.user_id,
                refresh_token_id=record.id,
            )

        with transaction(self._session_factory, self._deadline) as session:
            if not self._credentials.mark_used(session, record.id, reason="rotated"):
                raise ReusedTokenError(
                    "Refresh token consumed by a concurrent refresh",
                    user_id=record.user_id,
                    refresh_token_id=record.id,
                )
            issued = self.start_session(
                session,
                record.user_id,
                user_agent,
                ip_address,
                is_admin=claims.is_admin,
                parent_id=record.id,
            )

        log(log_session_event("refresh", record.user_id, issued.record.id,
                              user_agent=user_agent, ip_address=ip_address))
        logger.info(f"Refresh token {record.id} rotated to {issued.record.id}")
        return issued.tokens

    # -------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------

    def logout(self, refresh_token_id: str) -> None:
        """Burn the refresh token. Logging out an already-used token succeeds."""
        with transaction(self._session_factory, self._deadline) as session:
            record = self._credentials.find_by_id(session, refresh_token_id)
            if record is None:
                raise RefreshTokenNotFoundError(
                    "Refresh token not found",
                    refresh_token_id=refresh_token_id,
                )
            user_id = record.user_id
            if not self._credentials.mark_used(session, refresh_token_id, reason="logout"):
                logger.debug(f"Logout of already-used refresh token {refresh_token_id}")
        log(log_session_event("logout", user_id, refresh_token_id))

    # -------------------------------------------------------------------
    # Boundary authentication
    # -------------------------------------------------------------------

    def authenticate(self, bearer: Optional[str]) -> Principal:
        """
        Resolve a bearer credential into a Principal.

        The admin token yields Principal.admin(). An access token is valid only
        while its refresh record exists, is unused and unexpired.

        Raises:
            InvalidAccessTokenError (or subclass) for bad or revoked tokens.
        """
        if not bearer:
            return Principal.anonymous()

        if self._admin_token and hmac.compare_digest(
            bearer.encode("utf-8"), self._admin_token.encode("utf-8")
        ):
            return Principal.admin()

        claims = self._issuer.verify(bearer)

        with transaction(self._session_factory, self._deadline) as session:
            record = self._credentials.find_by_id(session, claims.refresh_token_id)

        if record is None:
            raise InvalidAccessTokenError(
                "Refresh token behind access token not found",
                user_id=claims.user_id,
                refresh_token_id=claims.refresh_token_id,
            )
        if record.used or utcnow() > record.expire_at:
            raise InvalidAccessTokenError(
                "Session revoked or expired",
                user_id=claims.user_id,
                refresh_token_id=record.id,
            )

        return Principal.user(
            claims.user_id,
            refresh_token_id=claims.refresh_token_id,
            is_admin=claims.is_admin,
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _notify_ip_change(self, user_id: str, new_ip: Optional[str], old_ip: Optional[str]) -> None:
        self._alert("ip_changed", user_id, None, level="INFO", new_ip=new_ip, old_ip=old_ip)
        if self._notifier is None:
            return
        try:
            self._notifier.notify_ip_change(user_id, new_ip, old_ip)
        except RuntimeError as e:
            # Thread could not be started
            logger.error(f"IP change notification not dispatched: {e}")

    def _alert(
        self,
        event: str,
        user_id: str,
        refresh_token_id: Optional[str],
        level: str = "WARNING",
        **details,
    ) -> None:
        logger.log(
            logging.getLevelName(level),
            f"Security alert {event}: user={user_id} token={refresh_token_id}",
        )
        log(log_security_event(
            event,
            stream="sessions",
            user_id=user_id,
            level=level,
            refresh_token_id=refresh_token_id,
            **details,
        ))

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._issuer.hash_refresh_secret("docvault-dummy-password")
        return self._dummy_hash


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ---------------------------------------------------------------------------
# Password Utilities
# ---------------------------------------------------------------------------

def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False
