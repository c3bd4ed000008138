"""
Core orchestration engine.

- Capability registry frozen into an immutable snapshot at startup
- Compiled per-capability state machines and a pure evaluator
- Orchestration core with optimistic-concurrency commits
- Session manager for idempotent submission and reconnect sync
"""

from .collaborators import CallerContext, HandlerInvocation, HandlerResult
from .errors import FlowError, RecoveryHint
from .machine import CompiledMachine, Edge, MachineDefinition
from .messages import MessageKind, OutboundMessage
from .orchestrator import FlowOrchestrator, InstanceView, KnownInstance, ProtocolState
from .registry import CapabilityDefinition, CapabilityRegistry, RegistrySnapshot
from .session import (
    CreateCommand,
    DismissCommand,
    EventCommand,
    PatchCommand,
    SessionManager,
)

__all__ = [
    "CallerContext",
    "HandlerInvocation",
    "HandlerResult",
    "FlowError",
    "RecoveryHint",
    "CompiledMachine",
    "Edge",
    "MachineDefinition",
    "MessageKind",
    "OutboundMessage",
    "FlowOrchestrator",
    "InstanceView",
    "KnownInstance",
    "ProtocolState",
    "CapabilityDefinition",
    "CapabilityRegistry",
    "RegistrySnapshot",
    "CreateCommand",
    "DismissCommand",
    "EventCommand",
    "PatchCommand",
    "SessionManager",
]
