"""
Dead Letter Queue — keep side effects that failed.

Fire-and-forget work (order confirmation e-mails, price-drop alerts) must
never fail the request that triggered it. When it does fail, the call is
captured here with its payload so it can be replayed or discarded later.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


@dataclass
class DeadLetter:
    """A failed side effect captured in the DLQ."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    queue_name: str = ""
    subject: str = ""
    event_type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    retry_count: int = 0
    max_retries: int = 3
    status: DLQStatus = DLQStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    resolved_at: datetime | None = None

    @property
    def can_retry(self) -> bool:
        return self.status == DLQStatus.PENDING and self.retry_count < self.max_retries


class DeadLetterQueue:
    """In-memory DLQ. Replace backing store for production."""

    def __init__(self):
        self._letters: dict[str, DeadLetter] = {}

    def enqueue(
        self,
        queue_name: str,
        subject: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
        max_retries: int = 3,
    ) -> DeadLetter:
        """Capture a failed side effect."""
        letter = DeadLetter(
            queue_name=queue_name,
            subject=subject,
            event_type=event_type,
            payload=payload,
            error=error,
            max_retries=max_retries,
        )
        self._letters[letter.id] = letter
        return letter

    def list_pending(self, queue_name: str | None = None, limit: int = 50) -> list[DeadLetter]:
        """Pending letters, oldest first."""
        results = [
            dl for dl in self._letters.values()
            if dl.status in (DLQStatus.PENDING, DLQStatus.RETRYING)
            and (queue_name is None or dl.queue_name == queue_name)
        ]
        results.sort(key=lambda dl: dl.created_at)
        return results[:limit]

    async def replay(
        self,
        letter_id: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
    ) -> bool:
        """Re-run a letter's payload through `handler`.

        Resolves the letter on success. On failure the letter goes back to
        pending with the new error, or is discarded once its retries are spent.
        """
        letter = self._letters.get(letter_id)
        if letter is None or not letter.can_retry:
            return False

        letter.status = DLQStatus.RETRYING
        letter.retry_count += 1
        letter.updated_at = _utcnow()
        try:
            await handler(letter.payload)
        except Exception as exc:
            letter.error = str(exc)
            letter.status = (
                DLQStatus.PENDING if letter.retry_count < letter.max_retries
                else DLQStatus.DISCARDED
            )
            letter.updated_at = _utcnow()
            return False

        letter.status = DLQStatus.RESOLVED
        letter.resolved_at = _utcnow()
        letter.updated_at = letter.resolved_at
        return True

    def purge_resolved(self, queue_name: str | None = None) -> int:
        """Remove resolved entries. Returns count removed."""
        to_remove = [
            dl_id for dl_id, dl in self._letters.items()
            if dl.status == DLQStatus.RESOLVED
            and (queue_name is None or dl.queue_name == queue_name)
        ]
        for dl_id in to_remove:
            del self._letters[dl_id]
        return len(to_remove)

    def __len__(self) -> int:
        return len(self._letters)
