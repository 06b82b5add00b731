"""User Store — account rows keyed by id and unique login."""

from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docvault.db.models import User
from docvault.engine.errors import ConflictError
from docvault.stores.cursor import decode_cursor, encode_cursor


class UserStore:

    def find_by_id(self, session: Session, user_id: str) -> Optional[User]:
        return session.query(User).filter(User.id == user_id).first()

    def find_by_login(self, session: Session, login: str) -> Optional[User]:
        return session.query(User).filter(User.login == login).first()

    def find_by_logins(self, session: Session, logins: List[str]) -> List[User]:
        if not logins:
            return []
        return session.query(User).filter(User.login.in_(logins)).all()

    def exists(self, session: Session, user_id: str) -> bool:
        return session.query(User.id).filter(User.id == user_id).first() is not None

    def create(self, session: Session, login: str, password_hash: str) -> User:
        """Insert a user. Raises ConflictError when the login is taken."""
        if self.find_by_login(session, login) is not None:
            raise ConflictError(f"Login '{login}' already exists", login=login)
        user = User(login=login, password_hash=password_hash)
        session.add(user)
        try:
            session.flush()
        except IntegrityError as e:
            raise ConflictError(f"Login '{login}' already exists", login=login) from e
        return user

    def update_login(self, session: Session, user: User, login: str) -> User:
        existing = self.find_by_login(session, login)
        if existing is not None and existing.id != user.id:
            raise ConflictError(f"Login '{login}' already exists", login=login)
        user.login = login
        session.flush()
        return user

    def update_password(self, session: Session, user: User, password_hash: str) -> None:
        user.password_hash = password_hash
        session.flush()

    def delete(self, session: Session, user: User) -> None:
        session.delete(user)
        session.flush()

    def list_page(
        self,
        session: Session,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Tuple[List[User], Optional[str]]:
        """Users ordered by (created_at, id) descending, one page at a time."""
        query = session.query(User)
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            query = query.filter(
                or_(
                    User.created_at < created_at,
                    and_(User.created_at == created_at, User.id < last_id),
                )
            )
        rows = query.order_by(User.created_at.desc(), User.id.desc()).limit(limit + 1).all()
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id)
        return rows, next_cursor
