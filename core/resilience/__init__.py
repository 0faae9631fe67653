"""
Storefront Core Resilience — Fault Tolerance Primitives.

Provides reliability patterns for checkout and its side effects:
- IdempotencyStore: Prevent duplicate checkouts and charges
- DeadLetterQueue: Capture failed fire-and-forget notifications
- retry_with_backoff: Bounded retry for optimistic-concurrency races
- CompensationStack: Reverse committed steps when a later one fails
"""
from core.resilience.compensation import (
    CompensationStack,
    RollbackOutcome,
)
from core.resilience.dlq import (
    DeadLetter,
    DeadLetterQueue,
    DLQStatus,
)
from core.resilience.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencyStore,
    generate_idempotency_key,
)
from core.resilience.retry import (
    backoff_delay,
    retry_with_backoff,
)

__all__ = [
    # Compensation
    "CompensationStack",
    "RollbackOutcome",
    # DLQ
    "DeadLetter",
    "DeadLetterQueue",
    "DLQStatus",
    # Idempotency
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencyStore",
    "generate_idempotency_key",
    # Retry
    "backoff_delay",
    "retry_with_backoff",
]
