"""
DocVault Document Service — Access resolution and cache coherence.

Handles:
- Read resolution for users (owner / grant / public), admins and anonymous callers
- Sharing and unsharing, visibility changes, soft deletion
- Document creation with a presigned upload URL and an anonymous access token
- Owner listings with cursor pagination

Every operation takes the calling Principal explicitly. Mutations commit
first, then invalidate the document's cache entry before returning; reads
populate the cache only from a committed transaction, under the generation
observed before the read began.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import List, Optional

from docvault.db.base import new_id
from docvault.db.models import Document
from docvault.db.session import check_deadline, transaction
from docvault.documents.models import CreatedDocument, DocumentPage, DocumentView, ResolvedDocument
from docvault.engine.cache import DocumentCache
from docvault.engine.errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    NotOwnerError,
    StorageUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from docvault.engine.logging import log, log_document_event, log_security_event
from docvault.engine.principal import Principal
from docvault.stores.documents import DocumentStore
from docvault.stores.grants import GrantStore
from docvault.stores.users import UserStore

logger = logging.getLogger("docvault.documents.service")

ACCESS_TOKEN_BYTES = 16
MAX_PAGE_SIZE = 100


class DocumentService:
    """
    Access resolver over the Document, Grant and User stores.

    The cache is optional and never authoritative: with ``cache=None`` or a
    disabled DocumentCache every read goes to the database and behaviour is
    otherwise identical.
    """

    def __init__(
        self,
        session_factory,
        cache: Optional[DocumentCache] = None,
        storage=None,
        documents: Optional[DocumentStore] = None,
        grants: Optional[GrantStore] = None,
        users: Optional[UserStore] = None,
        presign_ttl: int = 900,
        deadline: Optional[float] = None,
        token_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._storage = storage
        self._documents = documents or DocumentStore()
        self._grants = grants or GrantStore()
        self._users = users or UserStore()
        self._presign_ttl = presign_ttl
        self._deadline = deadline
        self._token_attempts = token_attempts

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def resolve_readable(
        self,
        principal: Principal,
        document_id: str,
        deadline: Optional[float] = None,
    ) -> ResolvedDocument:
        """
        Return the document if ``principal`` may read it.

        Raises:
            NotFoundError: no live document with this id.
            AccessDeniedError: the document exists but is not readable.
        """
        if principal.is_anonymous:
            return self.resolve_public(document_id, deadline=deadline)

        cached = self._cache_get(document_id)
        if cached is not None:
            self._authorize_read(principal, cached)
            log(log_document_event("document_read", document_id, principal.user_id, cached=True))
            return self._resolved(cached, cached=True)

        generation = self._cache.generation(document_id) if self._cache else None

        with transaction(self._session_factory, deadline or self._deadline) as session:
            if principal.has_admin_rights:
                document = self._documents.get_live(session, document_id)
            else:
                document = self._documents.get_by_id(session, document_id, principal.user_id)

            if document is None:
                if self._documents.get_live(session, document_id) is None:
                    raise NotFoundError("Document not found", document_id=document_id)
                self._deny(principal, document_id)

            view = self._load_view(session, document)
            self._authorize_read(principal, view)

        self._cache_set(view, generation)
        log(log_document_event("document_read", document_id, principal.user_id, cached=False))
        return self._resolved(view)

    def resolve_public(self, document_id: str, deadline: Optional[float] = None) -> ResolvedDocument:
        """Anonymous read by id; only public documents resolve."""
        cached = self._cache_get(document_id)
        if cached is not None:
            if not cached.is_public:
                raise NotFoundError("Public document not found", document_id=document_id)
            return self._resolved(cached, cached=True)

        generation = self._cache.generation(document_id) if self._cache else None
        with transaction(self._session_factory, deadline or self._deadline) as session:
            document = self._documents.get_public_by_id(session, document_id)
            if document is None:
                raise NotFoundError("Public document not found", document_id=document_id)
            view = self._load_view(session, document)

        self._cache_set(view, generation)
        return self._resolved(view)

    def resolve_by_token(
        self,
        access_token: str,
        public_only: bool = False,
        deadline: Optional[float] = None,
    ) -> ResolvedDocument:
        """
        Anonymous read by access token. Holding the token is the permission;
        ``public_only`` additionally requires ``is_public``.
        """
        if not access_token:
            raise NotFoundError("Document not found")
        with transaction(self._session_factory, deadline or self._deadline) as session:
            if public_only:
                document = self._documents.get_public_by_token(session, access_token)
            else:
                document = self._documents.get_by_token(session, access_token)
            if document is None:
                raise NotFoundError("Document not found")
            view = self._load_view(session, document)

        log(log_document_event("document_read_by_token", view.id))
        return self._resolved(view)

    def list_documents(
        self,
        principal: Principal,
        cursor: Optional[str] = None,
        limit: int = 20,
        owner_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> DocumentPage:
        """One page of an owner's documents. Admins may list any owner."""
        if principal.is_anonymous:
            raise AccessDeniedError("Anonymous callers cannot list documents")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

        owner = owner_id or principal.user_id
        if owner is None:
            raise ValidationError("owner_id is required", field="owner_id")
        if owner != principal.user_id and not principal.has_admin_rights:
            raise AccessDeniedError(
                "Cannot list another user's documents",
                user_id=principal.user_id,
                owner_id=owner,
            )

        with transaction(self._session_factory, deadline or self._deadline) as session:
            rows, next_cursor = self._documents.list_by_owner(session, owner, cursor, limit)
            items = [self._load_view(session, row) for row in rows]

        return DocumentPage(items=items, next_cursor=next_cursor)

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def create_document(
        self,
        principal: Principal,
        original_name: str,
        mime_type: str,
        size: int,
        content_hash: Optional[str] = None,
        is_public: bool = False,
        grant_logins: Optional[List[str]] = None,
        deadline: Optional[float] = None,
    ) -> CreatedDocument:
        """
        Register a document and return a presigned PUT URL for its bytes.

        The row exists as soon as this returns; the upload itself happens
        later, directly against object storage.
        """
        if principal.kind != "user" or not principal.user_id:
            raise AccessDeniedError("Only users can own documents")
        if not original_name or not original_name.strip():
            raise ValidationError("original_name is required", field="original_name")
        if not mime_type:
            raise ValidationError("mime_type is required", field="mime_type")
        if size < 0:
            raise ValidationError("size must not be negative", field="size")
        if self._storage is None:
            raise StorageUnavailableError("Object storage is not configured", operation="put_object")

        owner_id = principal.user_id
        document_id = new_id()
        storage_key = f"{owner_id}/{document_id}/{safe_filename(original_name)}"
        upload_url = self._storage.presigned_put_url(storage_key, self._presign_ttl, content_type=mime_type)

        logins = sorted(set(grant_logins or []))
        with transaction(self._session_factory, deadline or self._deadline) as session:
            targets = self._users.find_by_logins(session, logins)
            missing = set(logins) - {u.login for u in targets}
            if missing:
                raise UserNotFoundError(
                    f"Unknown grant login(s): {', '.join(sorted(missing))}",
                    lookup="grant_login",
                    user_id=owner_id,
                )

            document = self._documents.create(session, Document(
                id=document_id,
                owner_id=owner_id,
                original_name=original_name,
                size=size,
                mime_type=mime_type,
                content_hash=content_hash,
                storage_key=storage_key,
                is_public=is_public,
                access_token=self._generate_access_token(session),
                version=1,
            ))
            for target in targets:
                if target.id != owner_id:
                    self._grants.add_grant(session, document_id, target.id)
            check_deadline(session)
            view = self._load_view(session, document)

        log(log_document_event("document_created", document_id, owner_id))
        logger.info(f"Document {document_id} created by {owner_id}")
        return CreatedDocument(document=view, upload_url=upload_url)

    def share(
        self,
        principal: Principal,
        document_id: str,
        target_user_id: str,
        deadline: Optional[float] = None,
    ) -> bool:
        """
        Grant ``target_user_id`` read access. Idempotent.

        Returns:
            True if a grant row was created, False if it already existed.
        """
        with transaction(self._session_factory, deadline or self._deadline) as session:
            document = self._require_owner(session, principal, document_id)
            if not self._users.exists(session, target_user_id):
                raise UserNotFoundError(
                    "Share target not found",
                    lookup="share_target",
                    target_user_id=target_user_id,
                )
            if target_user_id == document.owner_id:
                created = False
            else:
                created = self._grants.add_grant(session, document_id, target_user_id)
            check_deadline(session)

        self._invalidate(document_id)
        log(log_document_event("document_shared", document_id, principal.user_id,
                               target_user_id=target_user_id))
        return created

    def unshare(
        self,
        principal: Principal,
        document_id: str,
        target_user_id: str,
        deadline: Optional[float] = None,
    ) -> bool:
        """Revoke a grant. Returns False if there was none."""
        with transaction(self._session_factory, deadline or self._deadline) as session:
            self._require_owner(session, principal, document_id)
            removed = self._grants.remove_grant(session, document_id, target_user_id)
            check_deadline(session)

        self._invalidate(document_id)
        log(log_document_event("document_unshared", document_id, principal.user_id,
                               target_user_id=target_user_id))
        return removed

    def set_visibility(
        self,
        principal: Principal,
        document_id: str,
        is_public: bool,
        deadline: Optional[float] = None,
    ) -> None:
        with transaction(self._session_factory, deadline or self._deadline) as session:
            self._require_owner(session, principal, document_id)
            self._documents.set_public(session, document_id, is_public)
            check_deadline(session)

        self._invalidate(document_id)
        log(log_document_event("document_public" if is_public else "document_private",
                               document_id, principal.user_id))

    def delete(
        self,
        principal: Principal,
        document_id: str,
        deadline: Optional[float] = None,
    ) -> None:
        """
        Soft-delete the document, then delete its object.

        Raises:
            StorageUnavailableError: the object could not be deleted. The
                document stays deleted; the orphaned object needs cleanup.
        """
        with transaction(self._session_factory, deadline or self._deadline) as session:
            self._require_owner(session, principal, document_id)
            storage_key = self._documents.soft_delete(session, document_id)
            check_deadline(session)

        self._invalidate(document_id)
        log(log_document_event("document_deleted", document_id, principal.user_id))

        if storage_key and self._storage is not None:
            try:
                self._storage.delete_object(storage_key)
            except StorageUnavailableError as e:
                logger.error(f"Document {document_id} deleted but object {storage_key} remains: {e}")
                log(log_document_event("document_object_orphaned", document_id,
                                       principal.user_id, error=str(e)))
                raise

    def invalidate(self, document_id: str) -> None:
        """Drop a document's cache entry after a mutation made elsewhere."""
        self._invalidate(document_id)

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _require_owner(self, session, principal: Principal, document_id: str) -> Document:
        document = self._documents.get_live(session, document_id)
        if document is None:
            raise NotFoundError("Document not found", document_id=document_id)
        if principal.is_anonymous:
            raise AccessDeniedError("Authentication required", document_id=document_id)
        if principal.has_admin_rights:
            return document

        if not self._grants.check_owner(session, document_id, principal.user_id):
            log(log_security_event(
                "document_not_owner",
                stream="documents",
                user_id=principal.user_id,
                document_id=document_id,
            ))
            raise NotOwnerError(
                "Only the owner can modify this document",
                user_id=principal.user_id,
                document_id=document_id,
            )
        return document

    def _authorize_read(self, principal: Principal, view: DocumentView) -> None:
        if principal.has_admin_rights or view.is_readable_by(principal.user_id):
            return
        self._deny(principal, view.id)

    def _deny(self, principal: Principal, document_id: str) -> None:
        log(log_security_event(
            "document_access_denied",
            stream="documents",
            user_id=principal.user_id,
            document_id=document_id,
        ))
        raise AccessDeniedError(
            "Access denied",
            user_id=principal.user_id,
            document_id=document_id,
        )

    def _load_view(self, session, document: Document) -> DocumentView:
        return DocumentView(
            id=document.id,
            owner_id=document.owner_id,
            original_name=document.original_name,
            size=document.size,
            mime_type=document.mime_type,
            content_hash=document.content_hash,
            storage_key=document.storage_key,
            is_public=document.is_public,
            access_token=document.access_token,
            version=document.version,
            created_at=document.created_at,
            updated_at=document.updated_at,
            grant_logins=self._grants.list_grants(session, document.id),
            grantee_ids=self._grants.list_grantee_ids(session, document.id),
        )

    def _resolved(self, view: DocumentView, cached: bool = False) -> ResolvedDocument:
        download_url = None
        if self._storage is not None and view.storage_key:
            download_url = self._storage.presigned_get_url(
                view.storage_key, self._presign_ttl, filename=view.original_name,
            )
        return ResolvedDocument(document=view, download_url=download_url, cached=cached)

    def _cache_get(self, document_id: str) -> Optional[DocumentView]:
        if self._cache is None:
            return None
        payload = self._cache.get(document_id)
        if payload is None:
            return None
        try:
            return DocumentView.model_validate(payload)
        except ValueError as e:
            logger.warning(f"Discarding malformed cache entry for {document_id}: {e}")
            return None

    def _cache_set(self, view: DocumentView, generation: Optional[int]) -> None:
        if self._cache is None:
            return
        self._cache.set(view.id, view.model_dump(mode="json"), generation)

    def _invalidate(self, document_id: str) -> None:
        if self._cache is None:
            return
        if not self._cache.invalidate(document_id):
            log(log_document_event("cache_invalidation_failed", document_id, error="redis unavailable"))

    def _generate_access_token(self, session) -> str:
        for _ in range(self._token_attempts):
            token = secrets.token_hex(ACCESS_TOKEN_BYTES)
            if not self._documents.token_exists(session, token):
                return token
        raise ConflictError("Could not generate a unique access token")


def safe_filename(filename: str) -> str:
    """
    Sanitize a filename for use in an object key.

    Removes path components, control and reserved characters and leading dots.
    Preserves the extension.
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = "".join(c for c in name if c.isprintable() and c not in '<>:"/\\|?*')
    name = name.lstrip(".").strip()
    if not name:
        name = "unnamed_document"
    if len(name) > 200:
        base, ext = os.path.splitext(name)
        name = base[:200 - len(ext)] + ext
    return name
