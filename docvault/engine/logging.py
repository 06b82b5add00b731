"""
DocVault Logging System — Structured JSON file-based logging with async queue.

Implements:
- FileLogger: Per-stream, per-category log files (daily rotation)
- AsyncLogQueue: In-memory queue with background flush
- Log entry builders for sessions, documents, users and system events

Files: {log_dir}/{stream}/{category}/{YYYY-MM-DD}.jsonl

Security alerts (token reuse, user-agent mismatch, IP change) are written to
the ``security`` category so they can be shipped to alerting separately from
the ``execution`` trail.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("docvault.engine.logging")

# Streams and their permitted categories
STREAM_CATEGORIES = {
    "sessions": ["execution", "security"],
    "documents": ["execution", "security"],
    "users": ["execution", "security"],
    "system": ["execution", "security"],
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("stream", "category", "data")

    def __init__(self, stream: str, category: str, data: Dict[str, Any]):
        self.stream = stream
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-stream, per-category files.

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for stream, categories in STREAM_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / stream / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of entries, grouping by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.stream, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, stream: str, category: str) -> Path:
        """Resolve the log file path for today's date."""
        if stream not in STREAM_CATEGORIES:
            stream = "system"
        if category not in STREAM_CATEGORIES[stream]:
            category = "execution"
        return self._log_dir / stream / category / f"{date.today().isoformat()}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        stream: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Query entries for a stream/category, newest file first.

        Args:
            filters: exact-match constraints on top-level keys.
            limit: max number of entries to return.
        """
        if end_date is None:
            end_date = date.today()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        base = self._log_dir / stream / category
        if not base.exists():
            return []

        results: List[Dict[str, Any]] = []
        current = end_date
        while current >= start_date and len(results) < limit:
            file_path = base / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                results.extend(self._read_jsonl(file_path, filters, limit - len(results)))
            current -= timedelta(days=1)
        return results[:limit]

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
        remaining: int,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
                    if len(entries) >= remaining:
                        break
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


class AsyncLogQueue:
    """
    In-memory queue with a background flush thread.

    Entries are pushed non-blocking; the flush thread writes every
    flush_interval_ms or when flush_batch_size entries accumulate.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="docvault-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Async log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._drain()
        logger.info(f"Async log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """Push an entry. Returns False if dropped (queue full)."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                try:
                    self._logger.write_batch(batch)
                except OSError as e:
                    logger.error(f"Log flush error: {e}")
            else:
                time.sleep(self._flush_interval)

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval

        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
        return batch

    def _drain(self) -> None:
        batch: List[LogEntry] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Log drain error: {e}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    user_id: Optional[Any] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_session_event(
    event: str,
    user_id: Any,
    refresh_token_id: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a session lifecycle entry (login, refresh, logout)."""
    data = _base_entry(
        event=event,
        level="INFO" if success else "WARNING",
        user_id=user_id,
        refresh_token_id=refresh_token_id,
        user_agent=user_agent,
        ip_address=ip_address,
        success=success,
        error=error,
    )
    return LogEntry("sessions", "execution", data)


def log_security_event(
    event: str,
    stream: str = "sessions",
    user_id: Optional[Any] = None,
    level: str = "WARNING",
    **details: Any,
) -> LogEntry:
    """Build a security alert (token reuse, hijack suspicion, access denial)."""
    data = _base_entry(event=event, level=level, user_id=user_id, **details)
    return LogEntry(stream if stream in STREAM_CATEGORIES else "system", "security", data)


def log_document_event(
    event: str,
    document_id: str,
    user_id: Optional[Any] = None,
    cached: Optional[bool] = None,
    target_user_id: Optional[str] = None,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a document operation entry (create, read, share, delete)."""
    data = _base_entry(
        event=event,
        level="ERROR" if error else "INFO",
        user_id=user_id,
        document_id=document_id,
        cached=cached,
        target_user_id=target_user_id,
        error=error,
    )
    return LogEntry("documents", "execution", data)


def log_user_event(event: str, user_id: Any, actor_id: Optional[Any] = None) -> LogEntry:
    data = _base_entry(event=event, level="INFO", user_id=user_id, actor_id=actor_id)
    return LogEntry("users", "execution", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event log entry (startup, shutdown, config changes)."""
    data = _base_entry(event=event, level=level)
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Convenience: Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    level: str = "INFO",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize the global async log queue and the stdlib ``docvault`` logger level."""
    global _global_queue
    logging.getLogger("docvault").setLevel(level.upper())
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push a log entry to the global queue. Non-blocking; no-op before init."""
    if _global_queue is None:
        logger.debug("Log queue not initialized — %s entry dropped", entry.data.get("event"))
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global log queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None
