"""
DocVault Models — SQLAlchemy tables for the docvault database.

Tables:
1. users            — Accounts (login is the unique human-facing handle)
2. documents        — Document metadata; bytes live in object storage
3. document_grants  — Per-user read grants (document ↔ user)
4. refresh_tokens   — Hashed refresh secrets, one row per issued pair
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from docvault.db.base import Base, SoftDeleteMixin, TimestampMixin, UTCDateTime, new_id, utcnow


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    login = Column(String(100), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, login='{self.login}')>"


# ---------------------------------------------------------------------------
# 2. Documents
# ---------------------------------------------------------------------------

class Document(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    # Set NULL only once the owner is deleted; by then every row is soft-deleted
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    original_name = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(100), nullable=False)
    content_hash = Column(String(128), nullable=True)
    storage_key = Column(String(500), nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    access_token = Column(String(64), unique=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        CheckConstraint("size >= 0", name="ck_documents_size"),
        CheckConstraint("owner_id IS NOT NULL OR deleted_at IS NOT NULL", name="ck_documents_owner"),
        Index("idx_documents_owner_created", "owner_id", "created_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, name='{self.original_name}', owner={self.owner_id})>"


# ---------------------------------------------------------------------------
# 3. Document Grants
# ---------------------------------------------------------------------------

class DocumentGrant(Base):
    __tablename__ = "document_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    target_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "target_user_id", name="uq_document_grant"),
        Index("idx_grants_target", "target_user_id"),
    )

    def __repr__(self) -> str:
        return f"<DocumentGrant(document={self.document_id}, user={self.target_user_id})>"


# ---------------------------------------------------------------------------
# 4. Refresh Tokens
# ---------------------------------------------------------------------------

class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    token_hash = Column(String(255), nullable=False)
    expire_at = Column(UTCDateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    revoked_at = Column(UTCDateTime, nullable=True)
    revoke_reason = Column(String(50), nullable=True)
    parent_id = Column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "revoke_reason IS NULL OR revoke_reason IN "
            "('rotated', 'logout', 'user_agent_mismatch', 'user_deleted', 'password_changed')",
            name="ck_refresh_tokens_reason",
        ),
        Index("idx_refresh_tokens_user_used", "user_id", "used"),
    )

    def __repr__(self) -> str:
        return f"<RefreshToken(id={self.id}, user={self.user_id}, used={self.used})>"
