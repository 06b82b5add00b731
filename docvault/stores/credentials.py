"""
Credential Store — persistence for refresh-token records.

Every method takes the caller's Session; the store never opens or commits a
transaction itself. ``mark_used`` is the single serialization point for
refresh rotation: it is a conditional UPDATE whose affected-row count tells
the caller whether it won the race.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from docvault.db.base import utcnow
from docvault.db.models import RefreshToken


class CredentialStore:

    def find_by_id(self, session: Session, token_id: str) -> Optional[RefreshToken]:
        return session.query(RefreshToken).filter(RefreshToken.id == token_id).first()

    def insert(self, session: Session, record: RefreshToken) -> RefreshToken:
        session.add(record)
        session.flush()
        return record

    def mark_used(self, session: Session, token_id: str, reason: str = "rotated") -> bool:
        """
        Flag the record used if it is not already.

        ``UPDATE refresh_tokens SET used=true ... WHERE id=? AND used=false``

        Returns:
            True if this call flipped the flag, False if the record was
            already used or does not exist.
        """
        rows = (
            session.query(RefreshToken)
            .filter(RefreshToken.id == token_id, RefreshToken.used.is_(False))
            .update(
                {
                    RefreshToken.used: True,
                    RefreshToken.revoked_at: utcnow(),
                    RefreshToken.revoke_reason: reason,
                },
                synchronize_session=False,
            )
        )
        return rows == 1

    def mark_all_used_for_user(self, session: Session, user_id: str, reason: str) -> int:
        """Burn every live token of a user. Returns the number burned."""
        return (
            session.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id, RefreshToken.used.is_(False))
            .update(
                {
                    RefreshToken.used: True,
                    RefreshToken.revoked_at: utcnow(),
                    RefreshToken.revoke_reason: reason,
                },
                synchronize_session=False,
            )
        )

    def count_live_for_user(self, session: Session, user_id: str) -> int:
        now = utcnow()
        return (
            session.query(RefreshToken)
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.used.is_(False),
                RefreshToken.expire_at > now,
            )
            .count()
        )
