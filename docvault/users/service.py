"""
DocVault User Service — Registration and account management.

Registration is gated by the shared admin token and returns the new user's
first token pair. Changing a password revokes every session of the user;
deleting a user burns their tokens, removes their grants and documents, and
invalidates every cache entry that mentioned them.
"""

from __future__ import annotations

import hmac
import logging
import unicodedata
from typing import List, Optional, Tuple

from docvault.db.session import check_deadline, transaction
from docvault.engine.cache import DocumentCache
from docvault.engine.errors import (
    AccessDeniedError,
    StorageUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from docvault.engine.logging import log, log_security_event, log_user_event
from docvault.engine.principal import Principal
from docvault.engine.security import SessionProtocol, hash_password
from docvault.engine.tokens import TokensPair
from docvault.stores.credentials import CredentialStore
from docvault.stores.documents import DocumentStore
from docvault.stores.grants import GrantStore
from docvault.stores.users import UserStore
from docvault.users.models import UserPage, UserView

logger = logging.getLogger("docvault.users.service")

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_LENGTH = 100
MAX_PAGE_SIZE = 100


class UserService:

    def __init__(
        self,
        session_factory,
        protocol: SessionProtocol,
        cache: Optional[DocumentCache] = None,
        storage=None,
        users: Optional[UserStore] = None,
        credentials: Optional[CredentialStore] = None,
        documents: Optional[DocumentStore] = None,
        grants: Optional[GrantStore] = None,
        admin_token: str = "",
        login_min_length: int = 8,
        bcrypt_rounds: int = 12,
        deadline: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._protocol = protocol
        self._cache = cache
        self._storage = storage
        self._users = users or UserStore()
        self._credentials = credentials or CredentialStore()
        self._documents = documents or DocumentStore()
        self._grants = grants or GrantStore()
        self._admin_token = admin_token
        self._login_min_length = login_min_length
        self._bcrypt_rounds = bcrypt_rounds
        self._deadline = deadline

    # -------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------

    def register(
        self,
        admin_token: str,
        login: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokensPair:
        """
        Create a user and open their first session.

        Raises:
            AccessDeniedError: wrong or unconfigured admin token.
            ValidationError: login or password rejected by policy.
            ConflictError: login already taken.
        """
        if not self._admin_token or not hmac.compare_digest(
            (admin_token or "").encode("utf-8"), self._admin_token.encode("utf-8")
        ):
            log(log_security_event("register_denied", stream="users", ip_address=ip_address))
            raise AccessDeniedError("Invalid admin token")

        self.validate_login(login)
        validate_password(password)
        password_hash = hash_password(password, rounds=self._bcrypt_rounds)

        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.create(session, login, password_hash)
            issued = self._protocol.start_session(session, user.id, user_agent, ip_address)

        log(log_user_event("user_registered", user.id))
        logger.info(f"User {user.id} registered as '{login}'")
        return issued.tokens

    def validate_login(self, login: str) -> None:
        if not login or len(login) < self._login_min_length:
            raise ValidationError(
                f"login must be at least {self._login_min_length} characters",
                field="login",
            )
        if len(login) > MAX_LOGIN_LENGTH:
            raise ValidationError(f"login must be at most {MAX_LOGIN_LENGTH} characters", field="login")
        if not login.isalnum():
            raise ValidationError("login may contain only letters and digits", field="login")

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get_user(self, principal: Principal, user_id: str) -> UserView:
        """Self or admin."""
        self._require_self_or_admin(principal, user_id)
        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.find_by_id(session, user_id)
            if user is None:
                raise UserNotFoundError("User not found", lookup="user_id", user_id=user_id)
            return UserView.model_validate(user)

    def list_users(
        self,
        principal: Principal,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> UserPage:
        """Any authenticated principal may list accounts."""
        if principal.is_anonymous:
            raise AccessDeniedError("Authentication required")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

        with transaction(self._session_factory, self._deadline) as session:
            rows, next_cursor = self._users.list_page(session, cursor, limit)
            items = [UserView.model_validate(row) for row in rows]
        return UserPage(items=items, next_cursor=next_cursor)

    # -------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------

    def update_login(self, principal: Principal, user_id: str, login: str) -> UserView:
        """Self only. Grant lists show logins, so cached documents are invalidated."""
        if not principal.is_user(user_id):
            raise AccessDeniedError("Only the account owner can change the login", user_id=user_id)
        self.validate_login(login)

        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.find_by_id(session, user_id)
            if user is None:
                raise UserNotFoundError("User not found", lookup="user_id", user_id=user_id)
            self._users.update_login(session, user, login)
            granted = self._grants.list_document_ids_for_user(session, user_id)
            view = UserView.model_validate(user)

        self._invalidate_all(granted)
        log(log_user_event("user_login_changed", user_id, actor_id=principal.user_id))
        return view

    def update_password(self, principal: Principal, user_id: str, password: str) -> int:
        """
        Self only. Every live refresh token of the user is burned.

        Returns:
            Number of sessions revoked.
        """
        if not principal.is_user(user_id):
            raise AccessDeniedError("Only the account owner can change the password", user_id=user_id)
        validate_password(password)
        password_hash = hash_password(password, rounds=self._bcrypt_rounds)

        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.find_by_id(session, user_id)
            if user is None:
                raise UserNotFoundError("User not found", lookup="user_id", user_id=user_id)
            self._users.update_password(session, user, password_hash)
            revoked = self._credentials.mark_all_used_for_user(session, user_id, reason="password_changed")

        log(log_user_event("user_password_changed", user_id, actor_id=principal.user_id))
        logger.info(f"Password changed for {user_id}; {revoked} session(s) revoked")
        return revoked

    # -------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------

    def delete_user(self, principal: Principal, user_id: str) -> None:
        """
        Self or admin.

        In one transaction: burn all tokens, drop grants held by the user,
        soft-delete their documents and delete the user row. After commit the
        affected cache entries are invalidated and the objects deleted; object
        deletion failures are logged and do not undo the account deletion.
        """
        self._require_self_or_admin(principal, user_id)

        with transaction(self._session_factory, self._deadline) as session:
            user = self._users.find_by_id(session, user_id)
            if user is None:
                raise UserNotFoundError("User not found", lookup="user_id", user_id=user_id)

            self._credentials.mark_all_used_for_user(session, user_id, reason="user_deleted")
            granted = self._grants.remove_all_for_user(session, user_id)
            owned = self._documents.list_live_ids_by_owner(session, user_id)
            for document_id, _ in owned:
                self._documents.soft_delete(session, document_id)
            check_deadline(session)
            self._users.delete(session, user)

        self._invalidate_all(granted + [document_id for document_id, _ in owned])
        orphaned = self._delete_objects(owned)

        log(log_user_event("user_deleted", user_id, actor_id=principal.user_id or principal.kind))
        logger.info(
            f"User {user_id} deleted ({len(owned)} document(s), {len(orphaned)} orphaned object(s))"
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _require_self_or_admin(self, principal: Principal, user_id: str) -> None:
        if principal.has_admin_rights or principal.is_user(user_id):
            return
        raise AccessDeniedError("Access denied", user_id=principal.user_id, target_user_id=user_id)

    def _invalidate_all(self, document_ids: List[str]) -> None:
        if self._cache is None:
            return
        for document_id in sorted(set(document_ids)):
            self._cache.invalidate(document_id)

    def _delete_objects(self, owned: List[Tuple[str, str]]) -> List[str]:
        orphaned: List[str] = []
        if self._storage is None:
            return orphaned
        for document_id, storage_key in owned:
            try:
                self._storage.delete_object(storage_key)
            except StorageUnavailableError as e:
                logger.error(f"Object {storage_key} of document {document_id} not deleted: {e}")
                orphaned.append(storage_key)
        return orphaned


def validate_password(password: str) -> None:
    """
    Password policy: 8+ characters, upper and lower case letters, a digit
    and a punctuation or symbol character; at most 72 bytes in UTF-8.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters", field="password"
        )
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"password must be at most {MAX_PASSWORD_BYTES} bytes", field="password"
        )
    if not any(c.isupper() for c in password) or not any(c.islower() for c in password):
        raise ValidationError("password must mix upper and lower case letters", field="password")
    if not any(c.isdigit() for c in password):
        raise ValidationError("password must contain a digit", field="password")
    if not any(unicodedata.category(c)[0] in ("P", "S") for c in password):
        raise ValidationError("password must contain a special character", field="password")
