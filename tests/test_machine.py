"""
Tests for capability machine compilation.

Tests cover:
- Generated per-capability State/Event enums
- Structural validation (reachability, final states, duplicate edges)
- Lookups: valid events, final states, edge presence
"""

from enum import Enum

import pytest

from flowstate.core.errors import InvalidMachineDefinition
from flowstate.core.machine import Edge, MachineDefinition


@pytest.fixture
def order_machine():
    definition = MachineDefinition(
        initial="review",
        transitions={
            "review": [
                Edge("CONFIRM", "confirmed", effect="submit"),
                Edge("EDIT", "review"),
                Edge("FAILURE", "payment_failed"),
            ],
            "payment_failed": [Edge("RETRY", "review")],
        },
        final=frozenset({"confirmed"}),
    )
    return definition.compile("commerce.place_order")


class TestCompilation:
    """Test compiling definitions into closed enum sets."""

    def test_enums_are_generated_per_capability(self, order_machine):
        assert issubclass(order_machine.State, Enum)
        assert order_machine.State.__name__ == "CommercePlaceOrderState"
        assert {s.value for s in order_machine.State} == {"review", "confirmed", "payment_failed"}
        assert {e.value for e in order_machine.Event} == {"CONFIRM", "EDIT", "FAILURE", "RETRY"}

    def test_initial_and_final_are_enum_members(self, order_machine):
        assert order_machine.initial is order_machine.State["review"]
        assert order_machine.final == frozenset({order_machine.State["confirmed"]})

    def test_cycles_are_allowed(self, order_machine):
        assert order_machine.has_edge("payment_failed", "RETRY")
        assert order_machine.has_edge("review", "FAILURE")

    def test_same_names_in_different_capabilities_are_distinct_types(self):
        definition = MachineDefinition(
            initial="a", transitions={"a": [Edge("GO", "b")]}, final=frozenset({"b"})
        )
        first = definition.compile("test.one")
        second = definition.compile("test.two")
        assert first.State["a"] != second.State["a"]

    def test_machine_without_edges(self):
        machine = MachineDefinition(initial="only", final=frozenset({"only"})).compile("test.noop")
        assert machine.is_final("only")
        assert machine.valid_events("only") == []


class TestValidation:
    """Test definitions rejected at compile time."""

    def test_unreachable_state(self):
        definition = MachineDefinition(
            initial="a",
            transitions={"a": [Edge("GO", "b")], "orphan": [Edge("GO", "b")]},
            final=frozenset({"b"}),
        )
        with pytest.raises(InvalidMachineDefinition, match="unreachable"):
            definition.compile("test.unreachable")

    def test_final_state_with_outgoing_edge(self):
        definition = MachineDefinition(
            initial="a",
            transitions={"a": [Edge("GO", "b")], "b": [Edge("BACK", "a")]},
            final=frozenset({"b"}),
        )
        with pytest.raises(InvalidMachineDefinition, match="outgoing"):
            definition.compile("test.final_edges")

    def test_initial_final_with_edges(self):
        definition = MachineDefinition(
            initial="a",
            transitions={"b": [Edge("GO", "a")]},
            final=frozenset({"a"}),
        )
        with pytest.raises(InvalidMachineDefinition):
            definition.compile("test.initial_final")

    def test_duplicate_edge(self):
        definition = MachineDefinition(
            initial="a",
            transitions={"a": [Edge("GO", "b"), Edge("GO", "c")]},
            final=frozenset({"b", "c"}),
        )
        with pytest.raises(InvalidMachineDefinition, match="duplicate"):
            definition.compile("test.duplicate")

    def test_invalid_names(self):
        definition = MachineDefinition(
            initial="a", transitions={"a": [Edge("go now!", "b")]}, final=frozenset({"b"})
        )
        with pytest.raises(InvalidMachineDefinition, match="not a valid"):
            definition.compile("test.names")


class TestLookups:
    """Test queries on a compiled machine."""

    def test_valid_events(self, order_machine):
        assert order_machine.valid_events("review") == ["CONFIRM", "EDIT", "FAILURE"]
        assert order_machine.valid_events("confirmed") == []

    def test_is_final(self, order_machine):
        assert order_machine.is_final("confirmed")
        assert not order_machine.is_final("review")

    def test_parse_event_rejects_unknown_names(self, order_machine):
        assert order_machine.parse_event("CONFIRM") is order_machine.Event["CONFIRM"]
        assert order_machine.parse_event("CANCEL") is None

    def test_edge_lookup(self, order_machine):
        edge = order_machine.edge(order_machine.State["review"], order_machine.Event["CONFIRM"])
        assert edge.target == "confirmed"
        assert edge.effect == "submit"
        assert order_machine.edge(order_machine.State["confirmed"], order_machine.Event["EDIT"]) is None

    def test_unknown_state(self, order_machine):
        with pytest.raises(InvalidMachineDefinition):
            order_machine.state("shipped")

    def test_edge_guard(self):
        edge = Edge("GO", "b", guard=lambda context, payload: payload.get("ok", False))
        assert edge.allows({}, {"ok": True})
        assert not edge.allows({}, {})
        assert Edge("GO", "b").allows({}, {})
