"""
Idempotency Store — run an operation at most once per key.

Checkout and payment calls may be retried by clients after a timeout. The
store remembers the outcome of each keyed operation so that a retry returns
the first result instead of reserving stock or charging a card twice.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
import hashlib
import json
import threading


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IdempotencyRecord:
    """Record of an idempotent operation."""
    key: str
    owner: str
    operation: str
    result: Any = None
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    error: str | None = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return _utcnow() >= self.expires_at


def generate_idempotency_key(operation: str, **kwargs: Any) -> str:
    """
    Generate a deterministic idempotency key from operation + params.
    Same inputs always produce the same key.
    """
    data = json.dumps({"op": operation, **kwargs}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class IdempotencyStore:
    """In-memory idempotency store. Replace backing store for production."""

    def __init__(self, default_ttl_seconds: int = 3600):
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()
        self.default_ttl = default_ttl_seconds

    def check(self, key: str) -> IdempotencyRecord | None:
        """
        Return the live record for `key`, or None when absent or expired.
        """
        with self._lock:
            return self._live(key)

    def _live(self, key: str) -> IdempotencyRecord | None:
        record = self._records.get(key)
        if record is None:
            return None
        if record.is_expired:
            del self._records[key]
            return None
        return record

    def reserve(
        self,
        key: str,
        owner: str,
        operation: str,
        ttl_seconds: int | None = None,
    ) -> IdempotencyRecord | None:
        """
        Mark `key` as in progress.
        Returns None if the key is already reserved or completed.
        """
        with self._lock:
            if self._live(key) is not None:
                return None

            ttl = ttl_seconds or self.default_ttl
            record = IdempotencyRecord(
                key=key,
                owner=owner,
                operation=operation,
                expires_at=_utcnow() + timedelta(seconds=ttl),
            )
            self._records[key] = record
            return record

    def complete(self, key: str, result: Any) -> bool:
        """Mark an operation as completed with its result."""
        with self._lock:
            record = self._records.get(key)
            if not record:
                return False
            record.status = IdempotencyStatus.COMPLETED
            record.result = result
            record.completed_at = _utcnow()
            return True

    def fail(self, key: str, error: str) -> bool:
        """
        Mark an operation as failed and drop the key so a new attempt can
        reserve it.
        """
        with self._lock:
            record = self._records.pop(key, None)
            if not record:
                return False
            record.status = IdempotencyStatus.FAILED
            record.error = error
            return True

    def cleanup_expired(self) -> int:
        """Remove all expired records. Returns count removed."""
        with self._lock:
            expired = [k for k, v in self._records.items() if v.is_expired]
            for k in expired:
                del self._records[k]
            return len(expired)
