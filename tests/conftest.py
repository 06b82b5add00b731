"""
DocVault Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

The database is a SQLite file under tmp_path (threads share it through the
busy timeout); Redis is fakeredis; object storage is an in-memory double.
"""

from __future__ import annotations

from typing import Dict, List, Optional
from unittest.mock import MagicMock

import fakeredis
import pytest

from docvault.db.models import User
from docvault.db.session import close_db, init_db, transaction
from docvault.documents.service import DocumentService
from docvault.engine.cache import DocumentCache, RedisCache
from docvault.engine.errors import StorageUnavailableError
from docvault.engine.principal import Principal
from docvault.engine.security import SessionProtocol, hash_password
from docvault.engine.tokens import TokenIssuer
from docvault.integrations.webhook import WebhookNotifier
from docvault.users.service import UserService

ADMIN_TOKEN = "test-admin-token"
JWT_SECRET = "k" * 64
PASSWORD = "Secr3t!pass"


# ---------------------------------------------------------------------------
# Environment setup — no real Redis / Postgres / S3 in unit tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset global singletons between tests."""
    import docvault.engine.config as cfg_mod
    import docvault.engine.runtime as runtime_mod

    cfg_mod._config = None
    runtime_mod._runtime = None
    yield
    cfg_mod._config = None
    runtime_mod._runtime = None


class FakeObjectStorage:
    """In-memory stand-in for S3ObjectStorage."""

    def __init__(self):
        self.bucket = "test-bucket"
        self.deleted: List[str] = []
        self.fail_deletes = False
        self.fail_presign = False

    def presigned_put_url(self, key: str, ttl: int, content_type: Optional[str] = None) -> str:
        if self.fail_presign:
            raise StorageUnavailableError("presign failed", storage_key=key, operation="put_object")
        return f"https://storage.test/{self.bucket}/{key}?op=put&ttl={ttl}"

    def presigned_get_url(self, key: str, ttl: int, filename: Optional[str] = None) -> str:
        if self.fail_presign:
            raise StorageUnavailableError("presign failed", storage_key=key, operation="get_object")
        return f"https://storage.test/{self.bucket}/{key}?op=get&ttl={ttl}"

    def delete_object(self, key: str) -> None:
        if self.fail_deletes:
            raise StorageUnavailableError("delete failed", storage_key=key, operation="delete_object")
        self.deleted.append(key)

    def ensure_bucket(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'docvault.db'}"


@pytest.fixture
def session_factory(db_url):
    factory = init_db(db_url, create_tables=True)
    yield factory
    close_db()


@pytest.fixture
def create_user(session_factory):
    """Insert a user directly. Returns the user id."""

    def _create(login: str, password: str = PASSWORD) -> str:
        with transaction(session_factory) as session:
            user = User(login=login, password_hash=hash_password(password, rounds=4))
            session.add(user)
            session.flush()
            return user.id

    return _create


@pytest.fixture
def users(create_user) -> Dict[str, str]:
    """Three accounts: owner, grantee, stranger."""
    return {
        "owner": create_user("owner0001"),
        "grantee": create_user("grantee001"),
        "stranger": create_user("stranger01"),
    }


# ---------------------------------------------------------------------------
# Cache / storage / webhook
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def redis_cache(fake_redis):
    return RedisCache(prefix="test:", default_ttl=300, client=fake_redis)


@pytest.fixture
def document_cache(redis_cache):
    return DocumentCache(redis_cache, ttl=300)


@pytest.fixture
def disabled_cache():
    return DocumentCache(None, ttl=0, enabled=False)


@pytest.fixture
def storage():
    return FakeObjectStorage()


@pytest.fixture
def notifier():
    return MagicMock(spec=WebhookNotifier)


@pytest.fixture
def mock_redis():
    """Return a mock Redis client."""
    client = MagicMock()
    client.ping.return_value = True
    client.get.return_value = None
    client.set.return_value = True
    client.delete.return_value = 1
    return client


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def issuer():
    return TokenIssuer(secret_key=JWT_SECRET, bcrypt_rounds=4)


@pytest.fixture
def protocol(session_factory, issuer, notifier):
    return SessionProtocol(session_factory, issuer, notifier=notifier, admin_token=ADMIN_TOKEN)


@pytest.fixture
def document_service(session_factory, document_cache, storage):
    return DocumentService(session_factory, cache=document_cache, storage=storage)


@pytest.fixture
def user_service(session_factory, protocol, document_cache, storage):
    return UserService(
        session_factory,
        protocol,
        cache=document_cache,
        storage=storage,
        admin_token=ADMIN_TOKEN,
        bcrypt_rounds=4,
    )


@pytest.fixture
def principals(users) -> Dict[str, Principal]:
    return {name: Principal.user(user_id) for name, user_id in users.items()}
