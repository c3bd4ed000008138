"""
Pure state machine evaluation: ``(machine, state, event) -> decision``.

No I/O and no mutation. Identical inputs always produce identical output,
which lets the orchestrator re-run evaluation after an optimistic conflict.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .errors import GuardRejected, InvalidTransition
from .machine import CompiledMachine

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class Decision:
    """Outcome of a successful evaluation."""

    source: str
    event: str
    target: str
    effect: str | None = None


def evaluate(
    machine: CompiledMachine,
    current_state: str,
    event: str,
    payload: Mapping[str, Any] | None = None,
    context: Mapping[str, Any] | None = None,
) -> Decision:
    """
    Resolve the edge for ``(current_state, event)``.

    Raises:
        InvalidTransition: the event is outside the capability's event set or
            has no edge from the current state.
        GuardRejected: the edge's guard returned false for ``(context, payload)``.
    """
    state = machine.state(current_state)
    valid = machine.valid_events(state)

    event_member = machine.parse_event(event)
    edge = machine.edge(state, event_member) if event_member is not None else None
    if edge is None:
        raise InvalidTransition(
            f"Event '{event}' is not valid in state '{current_state}'",
            valid_events=valid,
            state=current_state,
            event=event,
        )

    if not edge.allows(
        MappingProxyType(dict(context)) if context else _EMPTY,
        MappingProxyType(dict(payload)) if payload else _EMPTY,
    ):
        raise GuardRejected(
            f"Event '{event}' was rejected in state '{current_state}'",
            valid_events=valid,
            state=current_state,
            event=event,
        )

    return Decision(source=current_state, event=event, target=edge.target, effect=edge.effect)
