"""
Document Store — document metadata rows.

Deletion is soft: ``deleted_at`` is stamped and every lookup below filters it
out, so a deleted document is indistinguishable from a missing one.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from docvault.db.base import utcnow
from docvault.db.models import Document, DocumentGrant
from docvault.stores.cursor import decode_cursor, encode_cursor


class DocumentStore:

    def _live(self, session: Session):
        return session.query(Document).filter(Document.deleted_at.is_(None))

    def create(self, session: Session, document: Document) -> Document:
        session.add(document)
        session.flush()
        return document

    def get_live(self, session: Session, document_id: str) -> Optional[Document]:
        return self._live(session).filter(Document.id == document_id).first()

    def get_by_id(self, session: Session, document_id: str, principal_id: str) -> Optional[Document]:
        """The document if ``principal_id`` owns it, holds a grant on it, or it is public."""
        granted = exists().where(
            DocumentGrant.document_id == Document.id,
            DocumentGrant.target_user_id == principal_id,
        )
        return (
            self._live(session)
            .filter(
                Document.id == document_id,
                or_(Document.owner_id == principal_id, Document.is_public.is_(True), granted),
            )
            .first()
        )

    def get_by_token(self, session: Session, access_token: str) -> Optional[Document]:
        return self._live(session).filter(Document.access_token == access_token).first()

    def get_public_by_id(self, session: Session, document_id: str) -> Optional[Document]:
        return (
            self._live(session)
            .filter(Document.id == document_id, Document.is_public.is_(True))
            .first()
        )

    def get_public_by_token(self, session: Session, access_token: str) -> Optional[Document]:
        return (
            self._live(session)
            .filter(Document.access_token == access_token, Document.is_public.is_(True))
            .first()
        )

    def token_exists(self, session: Session, access_token: str) -> bool:
        # Deleted rows still hold their token (unique column)
        return (
            session.query(Document.id).filter(Document.access_token == access_token).first()
            is not None
        )

    def list_by_owner(
        self,
        session: Session,
        owner_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> Tuple[List[Document], Optional[str]]:
        """
        One page of an owner's live documents, newest first.

        Returns:
            (documents, next_cursor); next_cursor is None on the last page.
        """
        query = self._live(session).filter(Document.owner_id == owner_id)
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            query = query.filter(
                or_(
                    Document.created_at < created_at,
                    and_(Document.created_at == created_at, Document.id < last_id),
                )
            )
        rows = (
            query.order_by(Document.created_at.desc(), Document.id.desc())
            .limit(limit + 1)
            .all()
        )
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id)
        return rows, next_cursor

    def list_live_ids_by_owner(self, session: Session, owner_id: str) -> List[Tuple[str, str]]:
        rows = (
            session.query(Document.id, Document.storage_key)
            .filter(Document.owner_id == owner_id, Document.deleted_at.is_(None))
            .all()
        )
        return [(row.id, row.storage_key) for row in rows]

    def set_public(self, session: Session, document_id: str, is_public: bool) -> bool:
        rows = (
            session.query(Document)
            .filter(Document.id == document_id, Document.deleted_at.is_(None))
            .update(
                {Document.is_public: is_public, Document.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        return rows == 1

    def soft_delete(self, session: Session, document_id: str) -> Optional[str]:
        """
        Stamp ``deleted_at`` and drop the document's grants.

        Returns:
            The storage key of the deleted document, or None if it was not live.
        """
        document = self.get_live(session, document_id)
        if document is None:
            return None
        now = utcnow()
        document.deleted_at = now
        document.updated_at = now
        (
            session.query(DocumentGrant)
            .filter(DocumentGrant.document_id == document_id)
            .delete(synchronize_session=False)
        )
        session.flush()
        return document.storage_key
