"""
DocVault Runtime — Wires configuration into the services.

Ties together:
- Database engine and session factory
- Async JSONL log queue
- Redis-backed document cache
- Object storage and the IP-change webhook
- TokenIssuer, SessionProtocol, DocumentService, UserService

Lifecycle:
    runtime = init_runtime(config)
    runtime.startup()
    ...
    runtime.shutdown()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from docvault.db.session import close_db, init_db
from docvault.documents.service import DocumentService
from docvault.documents.storage import S3ObjectStorage
from docvault.engine.cache import DocumentCache, create_document_cache
from docvault.engine.config import DocVaultConfig
from docvault.engine.logging import (
    AsyncLogQueue,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)
from docvault.engine.security import SessionProtocol
from docvault.engine.tokens import TokenIssuer
from docvault.integrations.webhook import WebhookNotifier
from docvault.users.service import UserService

logger = logging.getLogger("docvault.engine.runtime")


class DocVaultRuntime:
    """Owns the shared resources; services are built once in ``startup()``."""

    def __init__(self, config: DocVaultConfig, create_tables: bool = False):
        self._config = config
        self._create_tables = create_tables

        self.session_factory = None
        self.log_queue: Optional[AsyncLogQueue] = None
        self.cache: Optional[DocumentCache] = None
        self.storage: Optional[S3ObjectStorage] = None
        self.notifier: Optional[WebhookNotifier] = None
        self.issuer: Optional[TokenIssuer] = None
        self.sessions: Optional[SessionProtocol] = None
        self.documents: Optional[DocumentService] = None
        self.users: Optional[UserService] = None

        self._started = False

    @property
    def config(self) -> DocVaultConfig:
        return self._config

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def startup(self) -> None:
        if self._started:
            logger.warning("Runtime already started")
            return

        cfg = self._config
        logger.info(f"Starting {cfg.name} ({cfg.environment})")

        # 1. Logging
        self.log_queue = init_logging(
            log_dir=cfg.logging.directory,
            level=cfg.logging.level,
            flush_interval_ms=cfg.logging.async_queue.flush_interval_ms,
            flush_batch_size=cfg.logging.async_queue.flush_batch_size,
            max_queue_size=cfg.logging.async_queue.max_queue_size,
        )

        # 2. Database
        db = cfg.database
        self.session_factory = init_db(
            db.url,
            create_tables=self._create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
            echo=db.echo,
        )

        # 3. Cache (degrades to no-op when Redis is down)
        self.cache = create_document_cache(
            cfg.redis.url,
            ttl=cfg.cache.ttl,
            db=cfg.redis.db,
            prefix=cfg.cache.prefix,
            enabled=cfg.cache.enabled,
        )

        # 4. Outbound systems
        self.storage = S3ObjectStorage.from_config(cfg)
        self.notifier = WebhookNotifier.from_config(cfg)

        # 5. Services
        deadline = cfg.transactions.default_deadline_seconds
        self.issuer = TokenIssuer.from_config(cfg)
        self.sessions = SessionProtocol(
            self.session_factory,
            self.issuer,
            notifier=self.notifier,
            admin_token=cfg.security.admin_token,
            deadline=deadline,
        )
        self.documents = DocumentService(
            self.session_factory,
            cache=self.cache,
            storage=self.storage,
            presign_ttl=cfg.storage.presign_ttl_seconds,
            deadline=deadline,
        )
        self.users = UserService(
            self.session_factory,
            self.sessions,
            cache=self.cache,
            storage=self.storage,
            admin_token=cfg.security.admin_token,
            login_min_length=cfg.security.login_min_length,
            bcrypt_rounds=cfg.security.bcrypt_rounds,
            deadline=deadline,
        )

        self._started = True
        log(log_system_event("runtime_started", details=self.status()))
        logger.info("DocVault runtime started")

    def shutdown(self) -> None:
        if not self._started:
            return
        log(log_system_event("runtime_shutdown"))
        shutdown_logging()
        if self.cache is not None:
            self.cache.close()
        close_db()
        self._started = False
        logger.info("DocVault runtime shut down")

    def status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "environment": self._config.environment,
            "cache_enabled": bool(self.cache and self.cache.enabled),
            "webhook_enabled": bool(self.notifier and self.notifier.enabled),
            "storage_bucket": self.storage.bucket if self.storage else None,
            "log_queue": None,
        }
        if self.log_queue:
            status["log_queue"] = {
                "pending": self.log_queue.pending_count,
                "dropped": self.log_queue.dropped_count,
            }
        return status


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_runtime: Optional[DocVaultRuntime] = None


def get_runtime() -> DocVaultRuntime:
    if _runtime is None:
        raise RuntimeError("DocVault runtime not initialized. Call init_runtime() first.")
    return _runtime


def init_runtime(config: DocVaultConfig, create_tables: bool = False) -> DocVaultRuntime:
    """Create (but do not start) the global runtime."""
    global _runtime
    _runtime = DocVaultRuntime(config, create_tables=create_tables)
    return _runtime
