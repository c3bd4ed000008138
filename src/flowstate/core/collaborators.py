"""
Interfaces of the external collaborators the orchestrator calls into.

Hydrators and event handlers are plain callables, sync or async. They signal
business failures by raising ``HydrationFailed`` / ``HandlerFailed``; any
other exception is treated as an internal error.
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CallerContext:
    """What the transport adapter knows about the caller."""

    session_id: str | None = None
    permissions: frozenset[str] = frozenset()
    locale: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    """
    What an event handler proposes after running its side effect.

    ``event`` names a follow-up event evaluated from the edge's target state;
    None means the edge's target is final for this application.
    """

    event: str | None = None
    context_patch: dict[str, Any] = field(default_factory=dict)
    render_data_patch: dict[str, Any] | None = None


@dataclass(frozen=True)
class HandlerInvocation:
    """Arguments passed to an event handler."""

    instance_id: str
    capability_id: str
    state: str
    event: str
    context: Mapping[str, Any]
    render_data: Mapping[str, Any]
    payload: Mapping[str, Any]


Hydrator = Callable[[dict[str, Any], CallerContext], dict[str, Any] | Awaitable[dict[str, Any]]]
EventHandler = Callable[
    [HandlerInvocation], HandlerResult | None | Awaitable[HandlerResult | None]
]


async def maybe_await(result: T | Awaitable[T]) -> T:
    """Await ``result`` when a collaborator returned an awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result


# Intent resolution


@dataclass(frozen=True)
class IntentMatch:
    capability_id: str
    entities: dict[str, Any]
    confidence: float


@dataclass(frozen=True)
class Ambiguous:
    candidates: list[IntentMatch]


@dataclass(frozen=True)
class NoMatch:
    reason: str = "no capability matched"


IntentResolution = IntentMatch | Ambiguous | NoMatch


class IntentResolver(ABC):
    """Upstream service turning free text into a capability id and entities."""

    @abstractmethod
    async def resolve(self, text: str, context: Mapping[str, Any]) -> IntentResolution:
        """Resolve ``text`` into an intent."""
        ...
