"""
Global pytest configuration and fixtures.

Provides a registry with the bundled order capabilities plus small test
capabilities, an in-memory store on a controllable clock, and a fresh
orchestrator and session manager per test.
"""

import asyncio
import logging
from typing import Any

import pytest
from opentelemetry import metrics as otel_metrics
from pydantic import BaseModel

from flowstate.capabilities.orders import PaymentGateway, register_capabilities
from flowstate.config.settings import EngineConfig, SessionConfig, get_settings
from flowstate.core.collaborators import CallerContext, HandlerInvocation, HandlerResult
from flowstate.core.errors import HandlerFailed
from flowstate.core.machine import Edge, MachineDefinition
from flowstate.core.orchestrator import FlowOrchestrator
from flowstate.core.registry import CapabilityDefinition, CapabilityRegistry
from flowstate.core.session import SessionManager
from flowstate.observability import logging as flow_logging
from flowstate.observability import tracing
from flowstate.observability.metrics import MetricsCollector
from flowstate.storage import InMemoryInstanceStore


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset cached settings, tracing, log context and root handlers around every test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    get_settings.cache_clear()
    tracing._tracing_manager = None
    flow_logging.set_trace_id(None)
    flow_logging.set_instance_id(None)
    yield
    get_settings.cache_clear()
    tracing._tracing_manager = None
    root.handlers[:] = handlers
    root.setLevel(level)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# Test capability schemas


class TitleEntities(BaseModel):
    title: str


class TitleRender(BaseModel):
    title: str
    note: str | None = None
    step: int = 0


def hydrate_title(entities: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    return {"title": entities["title"]}


class HandlerLog:
    """Records handler invocations; lets a test make handlers fail or block."""

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []
        self.fail_with: HandlerFailed | None = None
        self.gate: asyncio.Event | None = None
        self.started: asyncio.Event | None = None

    def record(self, name: str, invocation: HandlerInvocation) -> None:
        self.calls.append((name, invocation.state, invocation.event))

    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]


def register_test_capabilities(registry: CapabilityRegistry, log: HandlerLog) -> None:
    def begin(invocation: HandlerInvocation) -> HandlerResult:
        log.record("begin", invocation)
        return HandlerResult(event="STEP", context_patch={"begun": True})

    def step(invocation: HandlerInvocation) -> HandlerResult:
        log.record("step", invocation)
        return HandlerResult(
            event="SHIP", render_data_patch={"step": invocation.render_data["step"] + 1}
        )

    def ping(invocation: HandlerInvocation) -> HandlerResult:
        log.record("ping", invocation)
        return HandlerResult(event="PING")

    async def run(invocation: HandlerInvocation) -> HandlerResult:
        log.record("run", invocation)
        if log.started is not None:
            log.started.set()
        if log.gate is not None:
            await log.gate.wait()
        if log.fail_with is not None:
            raise log.fail_with
        return HandlerResult(
            context_patch={"runs": invocation.context.get("runs", 0) + 1},
            render_data_patch={"note": "ran"},
        )

    def crash(invocation: HandlerInvocation) -> HandlerResult:
        log.record("crash", invocation)
        raise RuntimeError("handler bug")

    def title_definition(cid, machine, handlers=None, **kwargs):
        return CapabilityDefinition(
            capability_id=cid,
            machine=machine,
            entity_schema=TitleEntities,
            render_data_schema=TitleRender,
            hydrator=hydrate_title,
            handlers=handlers or {},
            **kwargs,
        )

    # review --CONFIRM--> confirmed [final]
    registry.register(
        title_definition(
            "test.review",
            MachineDefinition(
                initial="review",
                transitions={"review": [Edge("CONFIRM", "confirmed")]},
                final=frozenset({"confirmed"}),
            ),
        )
    )
    # start --GO[begin]--> working --STEP[step]--> packing --SHIP--> shipped [final]
    registry.register(
        title_definition(
            "test.chain",
            MachineDefinition(
                initial="start",
                transitions={
                    "start": [Edge("GO", "working", effect="begin")],
                    "working": [Edge("STEP", "packing", effect="step")],
                    "packing": [Edge("SHIP", "shipped")],
                },
                final=frozenset({"shipped"}),
            ),
            handlers={"begin": begin, "step": step},
        )
    )
    registry.register(
        title_definition(
            "test.loop",
            MachineDefinition(initial="a", transitions={"a": [Edge("PING", "a", effect="ping")]}),
            handlers={"ping": ping},
        )
    )
    # idle --RUN[run]--> done [final]; idle --FAILURE--> broken --RETRY--> idle
    registry.register(
        title_definition(
            "test.flaky",
            MachineDefinition(
                initial="idle",
                transitions={
                    "idle": [
                        Edge("RUN", "done", effect="run"),
                        Edge("FAILURE", "broken"),
                        Edge("NOTE", "idle"),
                    ],
                    "broken": [Edge("RETRY", "idle")],
                },
                final=frozenset({"done"}),
            ),
            handlers={"run": run},
        )
    )
    # Same shape without a failure edge
    registry.register(
        title_definition(
            "test.nofail",
            MachineDefinition(
                initial="idle",
                transitions={"idle": [Edge("RUN", "done", effect="run")]},
                final=frozenset({"done"}),
            ),
            handlers={"run": run},
        )
    )
    registry.register(
        title_definition(
            "test.crash",
            MachineDefinition(
                initial="idle",
                transitions={"idle": [Edge("BOOM", "done", effect="crash")]},
                final=frozenset({"done"}),
            ),
            handlers={"crash": crash},
        )
    )
    registry.register(
        title_definition(
            "test.guarded",
            MachineDefinition(
                initial="review",
                transitions={"review": [Edge("CONFIRM", "confirmed")]},
                final=frozenset({"confirmed"}),
            ),
            required_permissions=frozenset({"test:admin"}),
        )
    )
    # Two versions of one capability with a forward migration
    registry.register(
        title_definition(
            "test.draft_v2",
            MachineDefinition(
                initial="editing",
                transitions={
                    "editing": [Edge("PUBLISH", "published")],
                },
                final=frozenset({"published"}),
            ),
        )
    )
    registry.register_migration(
        "test.review",
        "test.draft_v2",
        lambda state, context, render: (
            "editing",
            {**context, "migrated": True},
            {**render, "note": f"from {state}"},
        ),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handler_log():
    return HandlerLog()


@pytest.fixture
def gateway():
    return PaymentGateway()


@pytest.fixture
def registry(handler_log, gateway):
    builder = CapabilityRegistry()
    register_capabilities(builder, gateway=gateway)
    register_test_capabilities(builder, handler_log)
    return builder.freeze()


@pytest.fixture
def store(clock):
    return InMemoryInstanceStore(message_retention=200, clock=clock)


@pytest.fixture
def metrics():
    return MetricsCollector(otel_metrics.get_meter("flowstate-tests"))


@pytest.fixture
def engine_config():
    return EngineConfig(commit_retry_backoff=0.0, max_chained_events=4)


@pytest.fixture
def session_config():
    return SessionConfig(
        sync_replay_threshold=10,
        idle_timeout_seconds=60,
        idempotency_ttl_seconds=30,
        idempotency_max_entries=100,
    )


@pytest.fixture
def orchestrator(registry, store, engine_config, session_config, metrics, clock):
    return FlowOrchestrator(
        registry,
        store,
        engine_config=engine_config,
        session_config=session_config,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def sessions(orchestrator, session_config, metrics, clock):
    return SessionManager(orchestrator, config=session_config, metrics=metrics, clock=clock)


@pytest.fixture
def caller():
    return CallerContext(permissions=frozenset({"orders:write", "orders:read", "test:admin"}))
