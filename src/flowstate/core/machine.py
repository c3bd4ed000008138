"""
Capability state machine definitions.

A ``MachineDefinition`` is what capability authors write: states named by
strings, edges keyed by event names. Registration compiles it into a
``CompiledMachine`` whose states and events are closed ``Enum`` sets generated
for that capability, so an event name outside the set is rejected before any
edge lookup happens.
"""

import re
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidMachineDefinition

Guard = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.\-]*$")


@dataclass(frozen=True)
class Edge:
    """One ``event -> target`` edge, optionally guarded and carrying a named side effect."""

    event: str
    target: str
    guard: Guard | None = None
    effect: str | None = None

    def allows(self, context: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
        """Check the guard against ``(context, payload)``; unguarded edges always pass."""
        if self.guard is None:
            return True
        return bool(self.guard(context, payload))


@dataclass(frozen=True)
class MachineDefinition:
    """Declarative finite state machine as written by a capability author."""

    initial: str
    transitions: Mapping[str, Iterable[Edge]] = field(default_factory=dict)
    final: frozenset[str] = field(default_factory=frozenset)
    states: frozenset[str] = field(default_factory=frozenset)

    def all_states(self) -> set[str]:
        names = {self.initial, *self.final, *self.states, *self.transitions}
        for edges in self.transitions.values():
            names.update(edge.target for edge in edges)
        return names

    def compile(self, capability_id: str) -> "CompiledMachine":
        return CompiledMachine(capability_id, self)


def _enum_prefix(capability_id: str) -> str:
    return "".join(part.title() for part in re.split(r"[^A-Za-z0-9]+", capability_id) if part)


class CompiledMachine:
    """
    Validated, immutable machine with enum-typed states and events.

    Invariants checked at construction:
    - every state is reachable from ``initial``
    - final states have no outgoing edges
    - ``initial`` is final only for a machine with no edges at all
    - at most one edge per ``(state, event)``
    Cycles are allowed.
    """

    def __init__(self, capability_id: str, definition: MachineDefinition):
        self.capability_id = capability_id
        self.definition = definition

        state_names = sorted(definition.all_states())
        edges_by_source = {src: tuple(edges) for src, edges in definition.transitions.items()}
        event_names = sorted({edge.event for edges in edges_by_source.values() for edge in edges})

        for name in [*state_names, *event_names]:
            if not _NAME_RE.match(name):
                raise InvalidMachineDefinition(
                    f"{capability_id}: '{name}' is not a valid state or event name"
                )

        prefix = _enum_prefix(capability_id)
        self.State: type[Enum] = Enum(f"{prefix}State", [(n, n) for n in state_names])
        # An empty functional Enum is fine for no-op machines
        self.Event: type[Enum] = Enum(f"{prefix}Event", [(n, n) for n in event_names])

        self.initial = self.State[definition.initial]
        self.final = frozenset(self.State[name] for name in definition.final)

        self._edges: dict[tuple[Enum, Enum], Edge] = {}
        self._outgoing: dict[Enum, tuple[Enum, ...]] = {state: () for state in self.State}
        for source_name, edges in edges_by_source.items():
            source = self.State[source_name]
            events: list[Enum] = []
            for edge in edges:
                event = self.Event[edge.event]
                if (source, event) in self._edges:
                    raise InvalidMachineDefinition(
                        f"{capability_id}: duplicate edge for ({source_name}, {edge.event})"
                    )
                self._edges[(source, event)] = edge
                events.append(event)
            self._outgoing[source] = tuple(events)

        self._validate()

    def _validate(self) -> None:
        cid = self.capability_id
        for state in self.final:
            if self._outgoing[state]:
                raise InvalidMachineDefinition(
                    f"{cid}: final state '{state.value}' has outgoing edges"
                )

        if self.initial in self.final and self._edges:
            raise InvalidMachineDefinition(f"{cid}: initial state cannot be final")

        reachable = {self.initial}
        queue = deque([self.initial])
        while queue:
            state = queue.popleft()
            for event in self._outgoing[state]:
                target = self.State[self._edges[(state, event)].target]
                if target not in reachable:
                    reachable.add(target)
                    queue.append(target)

        unreachable = sorted(s.value for s in self.State if s not in reachable)
        if unreachable:
            raise InvalidMachineDefinition(
                f"{cid}: states unreachable from '{self.initial.value}': {unreachable}"
            )

    # Lookups

    def state(self, name: str) -> Enum:
        """Resolve a stored state name; unknown names mean the record does not match the machine."""
        try:
            return self.State[name]
        except KeyError:
            raise InvalidMachineDefinition(
                f"{self.capability_id}: unknown state '{name}'"
            ) from None

    def parse_event(self, name: str) -> Enum | None:
        """Return the event member for ``name`` or None when it is not in this capability's set."""
        return self.Event.__members__.get(name)

    def edge(self, state: Enum, event: Enum) -> Edge | None:
        return self._edges.get((state, event))

    def is_final(self, state: Enum | str) -> bool:
        if isinstance(state, str):
            state = self.state(state)
        return state in self.final

    def valid_events(self, state: Enum | str) -> list[str]:
        if isinstance(state, str):
            state = self.state(state)
        return [event.value for event in self._outgoing[state]]

    def has_edge(self, state: Enum | str, event_name: str) -> bool:
        return event_name in self.valid_events(state)

    def __repr__(self) -> str:
        return (
            f"CompiledMachine({self.capability_id!r}, states={len(self.State)}, "
            f"edges={len(self._edges)})"
        )
