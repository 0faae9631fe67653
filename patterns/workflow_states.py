"""Enum-based workflow state machine pattern.

Workflow states are Python enums and the allowed moves between them are a
plain transition table. The machine validates each move and keeps an
append-only history, independent of whatever stores the entity.

Used by the order lifecycle (pending → confirmed → … → delivered) and by
the manual overrides an operator may apply to a flash sale.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Mapping, Sequence, TypeVar

StateT = TypeVar("StateT", bound=Enum)

TransitionTable = Mapping[StateT, Sequence[StateT]]


def allowed_targets(table: TransitionTable, state: StateT) -> list[StateT]:
    """States reachable in one step from `state`."""
    return list(table.get(state, ()))


def can_transition(table: TransitionTable, from_state: StateT, to_state: StateT) -> bool:
    return to_state in table.get(from_state, ())


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@dataclass
class WorkflowTransition:
    """Record of a single state transition."""

    from_state: str
    to_state: str
    timestamp: datetime
    actor: str = "system"
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state,
            "to_state": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "message": self.message,
            "metadata": dict(self.metadata),
        }


@dataclass
class WorkflowInstance(Generic[StateT]):
    """A running workflow instance with state tracking.

    Usage::

        wf = WorkflowInstance(
            workflow_id="ORD-2610-000123",
            current_state=OrderStatus.PENDING,
            transitions=ORDER_TRANSITIONS,
        )
        wf.transition(OrderStatus.CONFIRMED, actor="payment")
        wf.transition(OrderStatus.PROCESSING, actor="warehouse")

    `on_reject` builds the exception raised for a disallowed move; it
    receives (current, requested, allowed) and defaults to ValueError.
    """

    workflow_id: str
    current_state: StateT
    transitions: TransitionTable
    history: list[WorkflowTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    on_reject: Callable[[StateT, StateT, list[StateT]], Exception] | None = None

    def can_transition(self, to_state: StateT) -> bool:
        """Check if a transition is allowed from the current state."""
        return can_transition(self.transitions, self.current_state, to_state)

    def transition(
        self,
        to_state: StateT,
        actor: str = "system",
        message: str = "",
        metadata: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> WorkflowTransition:
        """Execute a state transition.

        Raises the `on_reject` exception (ValueError by default) if the
        transition is not allowed.
        """
        if not self.can_transition(to_state):
            allowed = allowed_targets(self.transitions, self.current_state)
            if self.on_reject is not None:
                raise self.on_reject(self.current_state, to_state, allowed)
            allowed_names = [s.value for s in allowed]
            raise ValueError(
                f"Cannot transition from {self.current_state.value} to {to_state.value}. "
                f"Allowed: {allowed_names}"
            )

        record = WorkflowTransition(
            from_state=self.current_state.value,
            to_state=to_state.value,
            timestamp=at or datetime.now(timezone.utc),
            actor=actor,
            message=message,
            metadata=metadata or {},
        )
        self.history.append(record)
        self.current_state = to_state
        return record

    @property
    def is_terminal(self) -> bool:
        """Check if the workflow is in a terminal state."""
        return len(self.transitions.get(self.current_state, ())) == 0

    @property
    def transition_count(self) -> int:
        """Number of transitions that have occurred."""
        return len(self.history)
