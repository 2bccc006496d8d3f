"""
TABLE-DRIVEN STATE MACHINE

Validates status transitions per document type with:
- Explicit edge registration (directed graph)
- Fail-closed validation: an unregistered (from, to) pair is rejected
- Terminal state detection

Usage:
    po_machine = StateMachine("PURCHASE_ORDER", initial_state="DRAFT")
    po_machine.register("DRAFT", "PENDING_APPROVAL", description="Submit")
    po_machine.register("PENDING_APPROVAL", "APPROVED", description="Approve")

    check = po_machine.validate_transition("CANCELLED", "APPROVED")
    check.allowed  # False
"""

from dataclasses import dataclass
from typing import Dict, Optional, List, Set, Tuple, Iterable
import logging

from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of a transition validation."""
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self):
        return self.allowed


class Transition:
    """Definition of a permitted edge."""

    def __init__(self, from_state: str, to_state: str, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    State graph for one document type.

    Only registered edges are allowed. There is no implicit
    "anything not forbidden is allowed" rule.
    """

    def __init__(
        self,
        entity_name: str,
        initial_state: str = "DRAFT"
    ):
        self.entity_name = entity_name
        self.initial_state = initial_state

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}

        # Valid states
        self._states: Set[str] = {initial_state}

        logger.debug(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: str, to_state: str, description: str = "") -> "StateMachine":
        """Register a permitted edge. Returns self for chaining."""
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(from_state, to_state, description)
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    def register_many(self, edges: Iterable[Tuple[str, str]]) -> "StateMachine":
        for from_state, to_state in edges:
            self.register(from_state, to_state)
        return self

    def add_state(self, state: str) -> "StateMachine":
        """Declare a state with no outgoing edges (terminal)."""
        self._states.add(state)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> TransitionCheck:
        """Check an edge against the table without raising."""
        if from_state not in self._states:
            return TransitionCheck(False, f"Unknown state '{from_state}' for {self.entity_name}")
        if to_state not in self._states:
            return TransitionCheck(False, f"Unknown state '{to_state}' for {self.entity_name}")
        if not self.can_transition(from_state, to_state):
            allowed = self.get_allowed_transitions(from_state)
            if not allowed:
                return TransitionCheck(False, f"'{from_state}' is a terminal state")
            return TransitionCheck(
                False,
                f"'{from_state}' -> '{to_state}' is not permitted. Allowed: {allowed}"
            )
        return TransitionCheck(True)

    def require_transition(self, from_state: str, to_state: str) -> None:
        """
        Validate that a transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        if not self.validate_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def is_valid_state(self, state: str) -> bool:
        return state in self._states

    def is_terminal(self, state: str) -> bool:
        return state in self._states and not self.get_allowed_transitions(state)

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# REGISTRY
# =============================================================================

class StateMachineRegistry:
    """
    State machines keyed by document type.

    validate_transition() on an unknown type is rejected, not raised, so the
    fail-closed rule also covers misconfigured callers.
    """

    def __init__(self):
        self._machines: Dict[str, StateMachine] = {}

    def register(self, name: str, machine: StateMachine) -> None:
        self._machines[name] = machine
        logger.debug(f"[REGISTRY] Registered state machine: {name}")

    def get(self, name: str) -> StateMachine:
        if name not in self._machines:
            raise InvalidTransitionError(entity=name, from_state="?", to_state="?")
        return self._machines[name]

    def has(self, name: str) -> bool:
        return name in self._machines

    def list(self) -> List[str]:
        return list(self._machines.keys())

    def validate_transition(self, doc_type: str, from_state: str, to_state: str) -> TransitionCheck:
        machine = self._machines.get(doc_type)
        if machine is None:
            return TransitionCheck(False, f"Unknown document type '{doc_type}'")
        return machine.validate_transition(from_state, to_state)

    def require_transition(self, doc_type: str, from_state: str, to_state: str) -> None:
        check = self.validate_transition(doc_type, from_state, to_state)
        if not check.allowed:
            machine = self._machines.get(doc_type)
            allowed = machine.get_allowed_transitions(from_state) if machine else []
            logger.info(
                f"[STATE_MACHINE] Rejected {doc_type}: '{from_state}' -> '{to_state}' ({check.reason})"
            )
            raise InvalidTransitionError(
                entity=doc_type,
                from_state=from_state,
                to_state=to_state,
                allowed=allowed
            )
