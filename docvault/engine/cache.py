"""
DocVault Redis Cache Layer — Document metadata cache with explicit invalidation.

All Redis data is disposable and reconstructible from the database: a cache
outage degrades every read to a miss and every write to a no-op, and the
system stays correct with the cache disabled entirely (ttl = 0).

Key layout (prefix "docvault:"):
    docgen:{document_id}          — random generation token, replaced on invalidation
    doc:{document_id}:{gen}       — JSON snapshot of document + grants
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("docvault.engine.cache")


class RedisCache:
    """
    Redis wrapper with typed operations and a circuit breaker.

    Failures are logged and reported as None/False; they never raise.
    After ``failure_threshold`` failures within ``failure_window`` seconds
    the circuit opens and calls short-circuit until the window passes.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "docvault:",
        default_ttl: int = 300,
        db: int = 0,
        client: Any = None,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client = client
        self._available = client is not None

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize the Redis connection."""
        try:
            import redis
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis connected: DB {self._db} ({self._prefix})")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self, operation: str, error: Exception) -> None:
        logger.warning(f"Redis {operation} failed: {error}")
        now = time.time()
        if self._failure_count == 0 or now - self._first_failure_time > self._failure_window:
            self._first_failure_time = now
            self._failure_count = 0

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            self._circuit_open = True
            logger.error(
                f"Redis circuit breaker OPEN: {self._failure_count} failures in "
                f"{now - self._first_failure_time:.1f}s"
            )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Core Operations ──

    def get(self, key: str) -> Optional[str]:
        """Get a value. Returns None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except Exception as e:
            self._record_failure("GET", e)
            return None

    def get_checked(self, key: str) -> Tuple[bool, Optional[str]]:
        """Like get(), but tells a miss ``(True, None)`` from a failure ``(False, None)``."""
        if not self._check_circuit():
            return False, None
        try:
            return True, self._client.get(self._make_key(key))
        except Exception as e:
            self._record_failure("GET", e)
            return False, None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with TTL. Returns False on failure."""
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except Exception as e:
            self._record_failure("SET", e)
            return False

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """SET NX. Returns True only if this call created the key."""
        if not self._check_circuit():
            return False
        try:
            return bool(self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl, nx=True))
        except Exception as e:
            self._record_failure("SETNX", e)
            return False

    def delete(self, key: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.delete(self._make_key(key))
            return True
        except Exception as e:
            self._record_failure("DELETE", e)
            return False

    # ── JSON Operations ──

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            return self.set(key, json.dumps(value, default=str), ttl=ttl)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cannot serialize cache entry {key}: {e}")
            return False

    # ── Management ──

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Redis close failed: {e}")
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Document Cache — read-through / write-invalidate
# ---------------------------------------------------------------------------

class DocumentCache:
    """
    Document snapshots keyed by a per-document generation token.

    Readers call ``generation()`` before their database read and pass the
    value to ``set()``. ``invalidate()`` replaces the token with a fresh
    random one, so a snapshot loaded before a concurrent mutation lands under
    a generation nobody reads. Tokens never repeat: a lapsed or evicted
    generation key is recreated with a new token, and no snapshot written
    under an earlier token can become current again.
    """

    def __init__(self, cache: Optional[RedisCache], ttl: int = 300, enabled: bool = True):
        self._cache = cache
        self._ttl = ttl
        self._enabled = enabled
        self._generation_ttl = max(ttl * 10, 86400)

    @property
    def enabled(self) -> bool:
        return self._enabled and self._ttl > 0 and self._cache is not None

    def generation(self, document_id: str) -> Optional[str]:
        """Current generation token, or None when the cache cannot be used."""
        if not self.enabled:
            return None
        key = f"docgen:{document_id}"
        ok, token = self._cache.get_checked(key)
        if not ok:
            return None
        if token is not None:
            return token

        fresh = uuid.uuid4().hex
        if self._cache.set_if_absent(key, fresh, ttl=self._generation_ttl):
            return fresh
        # Another reader or an invalidation created it first
        ok, token = self._cache.get_checked(key)
        return token if ok else None

    def get(self, document_id: str) -> Optional[Dict[str, Any]]:
        """Cached snapshot or None on miss, disabled cache or failure."""
        gen = self.generation(document_id)
        if gen is None:
            return None
        payload = self._cache.get_json(f"doc:{document_id}:{gen}")
        if not isinstance(payload, dict):
            return None
        return payload

    def set(self, document_id: str, payload: Dict[str, Any], generation: Optional[str]) -> bool:
        if not self.enabled or generation is None:
            return False
        return self._cache.set_json(f"doc:{document_id}:{generation}", payload, ttl=self._ttl)

    def invalidate(self, document_id: str) -> bool:
        """
        Move the document to a fresh generation and drop the old snapshot.
        Returns False if Redis could not be reached; the caller's mutation
        stands either way.
        """
        if self._cache is None:
            return True
        if not self.enabled and not self._cache.is_available:
            return True
        key = f"docgen:{document_id}"
        ok, previous = self._cache.get_checked(key)
        if not ok or not self._cache.set(key, uuid.uuid4().hex, ttl=self._generation_ttl):
            logger.error(f"Cache invalidation failed for document {document_id}")
            return False
        if previous is not None:
            self._cache.delete(f"doc:{document_id}:{previous}")
        return True

    def close(self) -> None:
        if self._cache is not None:
            self._cache.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_document_cache(redis_url: str, ttl: int = 300, db: int = 0,
                          prefix: str = "docvault:", enabled: bool = True) -> DocumentCache:
    """Create and connect the document cache. ttl <= 0 disables it."""
    if not enabled or ttl <= 0:
        return DocumentCache(None, ttl=ttl, enabled=False)
    cache = RedisCache(redis_url=redis_url, prefix=prefix, default_ttl=ttl, db=db)
    cache.connect()
    return DocumentCache(cache, ttl=ttl)
