"""
Capability registry.

Capabilities are registered into a ``CapabilityRegistry`` during startup and the
registry is then frozen into an immutable ``RegistrySnapshot`` that is handed
to the orchestrator explicitly. Definitions are never mutated in place; a new
version gets a new id plus an optional migration from the old one.
"""

import importlib
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ValidationError

from ..observability.logging import get_logger
from .collaborators import EventHandler, Hydrator
from .errors import (
    DuplicateCapability,
    HydrationSchemaMismatch,
    InvalidEntities,
    InvalidMachineDefinition,
    InvalidPayload,
    UnknownCapability,
    ValidationFailure,
)
from .machine import CompiledMachine, MachineDefinition

logger = get_logger(__name__)

_CAPABILITY_ID_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z0-9_]+)+$")

# (state, context, render_data) -> (state, context, render_data)
Migration = Callable[
    [str, dict[str, Any], dict[str, Any]], tuple[str, dict[str, Any], dict[str, Any]]
]


@dataclass(frozen=True)
class CapabilityDefinition:
    """Everything needed to run one capability."""

    capability_id: str
    machine: MachineDefinition
    entity_schema: type[BaseModel]
    render_data_schema: type[BaseModel]
    hydrator: Hydrator
    handlers: Mapping[str, EventHandler] = field(default_factory=dict)
    payload_schemas: Mapping[str, type[BaseModel]] = field(default_factory=dict)
    required_permissions: frozenset[str] = frozenset()
    description: str = ""


def _schema_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


def validate_with(
    schema: type[BaseModel],
    data: Mapping[str, Any],
    error_cls: type[ValidationFailure],
    what: str,
) -> dict[str, Any]:
    """Validate ``data`` against ``schema`` and return its JSON-compatible normal form."""
    try:
        return schema.model_validate(dict(data)).model_dump(mode="json")
    except ValidationError as e:
        raise error_cls(f"{what} failed validation", errors=_schema_errors(e)) from None


class Capability:
    """A registered capability: its definition plus the compiled machine."""

    def __init__(self, definition: CapabilityDefinition, machine: CompiledMachine):
        self.definition = definition
        self.machine = machine

    @property
    def capability_id(self) -> str:
        return self.definition.capability_id

    @property
    def required_permissions(self) -> frozenset[str]:
        return self.definition.required_permissions

    def handler(self, effect: str) -> EventHandler:
        return self.definition.handlers[effect]

    def validate_entities(self, entities: Mapping[str, Any]) -> dict[str, Any]:
        return validate_with(
            self.definition.entity_schema, entities, InvalidEntities, "entities"
        )

    def validate_render_data(
        self,
        render_data: Mapping[str, Any],
        error_cls: type[ValidationFailure] = HydrationSchemaMismatch,
    ) -> dict[str, Any]:
        return validate_with(
            self.definition.render_data_schema, render_data, error_cls, "render data"
        )

    def validate_payload(self, event: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        schema = self.definition.payload_schemas.get(event)
        if schema is None:
            return dict(payload)
        return validate_with(schema, payload, InvalidPayload, f"payload for '{event}'")

    def describe(self) -> dict[str, Any]:
        machine = self.machine
        return {
            "capability_id": self.capability_id,
            "description": self.definition.description,
            "initial": machine.initial.value,
            "final": sorted(state.value for state in machine.final),
            "states": {state.value: machine.valid_events(state) for state in machine.State},
            "required_permissions": sorted(self.required_permissions),
        }


class RegistrySnapshot:
    """Immutable view of registered capabilities and migrations."""

    def __init__(
        self,
        capabilities: Mapping[str, Capability],
        migrations: Mapping[tuple[str, str], Migration],
    ):
        self._capabilities = MappingProxyType(dict(capabilities))
        self._migrations = MappingProxyType(dict(migrations))

    def resolve(self, capability_id: str) -> Capability:
        try:
            return self._capabilities[capability_id]
        except KeyError:
            raise UnknownCapability(
                f"Unknown capability '{capability_id}'", capability_id=capability_id
            ) from None

    def migration(self, from_id: str, to_id: str) -> Migration | None:
        return self._migrations.get((from_id, to_id))

    def ids(self) -> list[str]:
        return sorted(self._capabilities)

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())

    def __len__(self) -> int:
        return len(self._capabilities)


class CapabilityRegistry:
    """Append-only builder used at startup; call ``freeze()`` once everything is registered."""

    def __init__(self):
        self._capabilities: dict[str, Capability] = {}
        self._migrations: dict[tuple[str, str], Migration] = {}
        self._frozen = False

    def _check_open(self) -> None:
        if self._frozen:
            raise RuntimeError("Capability registry is frozen")

    def register(self, definition: CapabilityDefinition) -> Capability:
        """Validate and add a capability definition."""
        self._check_open()
        cid = definition.capability_id

        if not _CAPABILITY_ID_RE.match(cid):
            raise InvalidMachineDefinition(
                f"Capability id '{cid}' must be hierarchical, e.g. 'domain.action'"
            )
        if cid in self._capabilities:
            raise DuplicateCapability(f"Capability '{cid}' already registered", capability_id=cid)

        machine = definition.machine.compile(cid)

        effects = {
            edge.effect
            for edges in definition.machine.transitions.values()
            for edge in edges
            if edge.effect
        }
        missing = sorted(effects - set(definition.handlers))
        if missing:
            raise InvalidMachineDefinition(f"{cid}: no handler registered for effects {missing}")

        unknown_events = sorted(
            set(definition.payload_schemas) - {event.value for event in machine.Event}
        )
        if unknown_events:
            raise InvalidMachineDefinition(
                f"{cid}: payload schemas for events not in the machine: {unknown_events}"
            )

        capability = Capability(definition, machine)
        self._capabilities[cid] = capability
        logger.info(f"Registered capability {cid}", states=len(machine.State))
        return capability

    def register_migration(self, from_id: str, to_id: str, migration: Migration) -> None:
        """Register a forward migration between two registered capability versions."""
        self._check_open()
        for cid in (from_id, to_id):
            if cid not in self._capabilities:
                raise UnknownCapability(f"Unknown capability '{cid}'", capability_id=cid)
        if (from_id, to_id) in self._migrations:
            raise DuplicateCapability(
                f"Migration {from_id} -> {to_id} already registered", capability_id=to_id
            )
        self._migrations[(from_id, to_id)] = migration

    def freeze(self) -> RegistrySnapshot:
        self._frozen = True
        return RegistrySnapshot(self._capabilities, self._migrations)


def load_capability_modules(registry: CapabilityRegistry, modules: list[str]) -> None:
    """Import each module and let it register its capabilities."""
    for module_name in modules:
        module = importlib.import_module(module_name)
        register = getattr(module, "register_capabilities", None)
        if register is None:
            raise InvalidMachineDefinition(
                f"Module '{module_name}' has no register_capabilities(registry)"
            )
        register(registry)
        logger.info(f"Loaded capabilities from {module_name}")
