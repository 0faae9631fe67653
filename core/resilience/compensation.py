"""
Compensation stack — undo committed steps in reverse order.

A multi-step operation records an undo action after each step succeeds.
If a later step fails, the recorded undo actions run newest-first. A failing
compensator does not stop the others; the outcome reports how many ran and
how many failed so the caller can log an incomplete rollback.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
import asyncio
import logging

logger = logging.getLogger(__name__)

Compensator = Callable[[], Any]


@dataclass(frozen=True)
class RollbackOutcome:
    compensators_run: int
    compensators_failed: int

    @property
    def rollback_complete(self) -> bool:
        return self.compensators_failed == 0


@dataclass
class CompensationStack:
    """Ordered undo log for one operation.

    Usage::

        stack = CompensationStack()
        await reserve_a()
        stack.push("release a", release_a)
        try:
            await reserve_b()
        except Exception:
            await stack.rollback()
            raise
    """

    _entries: list[tuple[str, Compensator]] = field(default_factory=list)

    def push(self, label: str, compensator: Callable[[], Awaitable[Any] | Any]) -> None:
        self._entries.append((label, compensator))

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Forget recorded steps once the operation has committed."""
        self._entries.clear()

    async def rollback(self) -> RollbackOutcome:
        """Run compensators newest-first. Returns (run, failed) counts."""
        comp_run = 0
        comp_failed = 0

        for label, compensator in reversed(self._entries):
            try:
                result = compensator()
                if asyncio.iscoroutine(result):
                    await result
                comp_run += 1
            except Exception:
                comp_failed += 1
                logger.exception("compensation failed: %s", label)

        self._entries.clear()
        return RollbackOutcome(compensators_run=comp_run, compensators_failed=comp_failed)
