"""
Grant Store — document ↔ user read grants.

``add_grant`` checks that the document exists and is not soft-deleted in the
same transaction as the insert, so a grant can never point at a deleted
document. Inserting an existing pair is a no-op.
"""

from __future__ import annotations

from typing import List

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from docvault.db.base import utcnow
from docvault.db.models import Document, DocumentGrant, User
from docvault.engine.errors import NotFoundError

# INSERT ... ON CONFLICT DO NOTHING
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class GrantStore:

    def add_grant(self, session: Session, document_id: str, target_user_id: str) -> bool:
        """
        Insert a grant if absent.

        Returns:
            True if a row was inserted, False if it already existed.
        """
        live = (
            session.query(Document.id)
            .filter(Document.id == document_id, Document.deleted_at.is_(None))
            .first()
        )
        if live is None:
            raise NotFoundError("Document not found", document_id=document_id)

        dialect = session.get_bind().dialect.name
        if dialect in _UPSERT_INSERTS:
            stmt = (
                _UPSERT_INSERTS[dialect](DocumentGrant)
                .values(document_id=document_id, target_user_id=target_user_id, created_at=utcnow())
                .on_conflict_do_nothing(index_elements=["document_id", "target_user_id"])
            )
            return session.execute(stmt).rowcount == 1

        if self.has_grant(session, document_id, target_user_id):
            return False
        session.add(DocumentGrant(document_id=document_id, target_user_id=target_user_id))
        session.flush()
        return True

    def remove_grant(self, session: Session, document_id: str, target_user_id: str) -> bool:
        rows = (
            session.query(DocumentGrant)
            .filter(
                DocumentGrant.document_id == document_id,
                DocumentGrant.target_user_id == target_user_id,
            )
            .delete(synchronize_session=False)
        )
        return rows > 0

    def remove_all_for_user(self, session: Session, user_id: str) -> List[str]:
        """Delete every grant held by a user. Returns the affected document ids."""
        document_ids = [
            row.document_id
            for row in session.query(DocumentGrant.document_id)
            .filter(DocumentGrant.target_user_id == user_id)
            .all()
        ]
        if document_ids:
            (
                session.query(DocumentGrant)
                .filter(DocumentGrant.target_user_id == user_id)
                .delete(synchronize_session=False)
            )
        return document_ids

    def has_grant(self, session: Session, document_id: str, user_id: str) -> bool:
        return (
            session.query(DocumentGrant.id)
            .filter(
                DocumentGrant.document_id == document_id,
                DocumentGrant.target_user_id == user_id,
            )
            .first()
            is not None
        )

    def has_access(self, session: Session, document_id: str, user_id: str) -> bool:
        """Owner, grantee, or public — on a live document."""
        document = (
            session.query(Document)
            .filter(Document.id == document_id, Document.deleted_at.is_(None))
            .first()
        )
        if document is None:
            return False
        if document.owner_id == user_id or document.is_public:
            return True
        return self.has_grant(session, document_id, user_id)

    def check_owner(self, session: Session, document_id: str, user_id: str) -> bool:
        return (
            session.query(Document.id)
            .filter(
                Document.id == document_id,
                Document.owner_id == user_id,
                Document.deleted_at.is_(None),
            )
            .first()
            is not None
        )

    def list_grants(self, session: Session, document_id: str) -> List[str]:
        """Logins of every grantee, sorted."""
        rows = (
            session.query(User.login)
            .join(DocumentGrant, DocumentGrant.target_user_id == User.id)
            .filter(DocumentGrant.document_id == document_id)
            .order_by(User.login)
            .all()
        )
        return [row.login for row in rows]

    def list_grantee_ids(self, session: Session, document_id: str) -> List[str]:
        rows = (
            session.query(DocumentGrant.target_user_id)
            .filter(DocumentGrant.document_id == document_id)
            .all()
        )
        return sorted(row.target_user_id for row in rows)

    def list_document_ids_for_user(self, session: Session, user_id: str) -> List[str]:
        """Documents on which ``user_id`` holds a grant."""
        rows = (
            session.query(DocumentGrant.document_id)
            .filter(DocumentGrant.target_user_id == user_id)
            .all()
        )
        return [row.document_id for row in rows]
