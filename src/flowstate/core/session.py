"""
Session and sync management.

Transports deliver at least once: a client that reconnects resends whatever
it is unsure about. Every inbound command therefore carries an idempotency
key, and a repeated key is answered from the recorded outcome instead of
reaching the orchestrator again. Duplicates that arrive while the first copy
is still running join that execution.
"""

import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from ..config.settings import SessionConfig
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics_collector
from .collaborators import CallerContext
from .errors import FlowError, InternalError, InvalidPayload, SessionNotFound
from .messages import MessageKind, OutboundMessage
from .orchestrator import FlowOrchestrator, KnownInstance, OperationResult
from .runtime_patterns import SingleFlight

logger = get_logger(__name__)


# Commands


@dataclass(frozen=True)
class CreateCommand:
    capability_id: str
    entities: dict[str, Any] = field(default_factory=dict)
    parent_instance_id: str | None = None


@dataclass(frozen=True)
class EventCommand:
    instance_id: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PatchCommand:
    instance_id: str
    patch: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DismissCommand:
    instance_id: str
    reason: str = "dismissed"


Command = CreateCommand | EventCommand | PatchCommand | DismissCommand


@dataclass
class Outcome:
    """Recorded result of one command: an operation result or the error it raised."""

    result: OperationResult | None = None
    error: FlowError | None = None
    replayed: bool = False

    def unwrap(self) -> OperationResult:
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class SessionRecord:
    session_id: str
    caller: CallerContext
    # instance id -> last message_seq delivered to this session
    live_instances: dict[str, int] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)

    def track(self, messages: list[OutboundMessage]) -> None:
        for message in messages:
            if message.kind is MessageKind.DISMISSED:
                self.live_instances.pop(message.instance_id, None)
            else:
                seen = self.live_instances.get(message.instance_id, 0)
                self.live_instances[message.instance_id] = max(seen, message.message_seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "live_instances": dict(self.live_instances),
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
        }


class IdempotencyCache:
    """
    Bounded record of ``key -> (command, outcome)``.

    Entries expire after ``ttl_seconds``; past ``max_entries`` the oldest go first.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: OrderedDict[str, tuple[float, Command, Outcome]] = OrderedDict()

    def get(self, key: str) -> tuple[Command, Outcome] | None:
        self.purge()
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, command, outcome = entry
        return command, outcome

    def put(self, key: str, command: Command, outcome: Outcome) -> None:
        self._entries[key] = (self.clock() + self.ttl_seconds, command, outcome)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def purge(self) -> int:
        now = self.clock()
        expired = [key for key, (expires_at, _, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SessionManager:
    """Per-connection bookkeeping in front of a ``FlowOrchestrator``."""

    def __init__(
        self,
        orchestrator: FlowOrchestrator,
        config: SessionConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.config = config or SessionConfig()
        self.metrics = metrics or get_metrics_collector()
        self.clock = clock
        self._sessions: dict[str, SessionRecord] = {}
        self._cache = IdempotencyCache(
            self.config.idempotency_ttl_seconds, self.config.idempotency_max_entries, clock
        )
        self._flights = SingleFlight()
        # cache key -> command currently executing under it
        self._pending: dict[str, Command] = {}

    # Sessions

    def open_session(
        self, session_id: str | None = None, caller: CallerContext | None = None
    ) -> SessionRecord:
        """Open a session, or resume it when ``session_id`` is already known."""
        now = self.clock()
        session = self._sessions.get(session_id) if session_id else None
        if session is not None:
            if caller is not None:
                session.caller = caller
            session.last_active_at = now
            logger.info("Resumed session", session=session.session_id)
            return session

        session_id = session_id or uuid.uuid4().hex
        session = SessionRecord(
            session_id=session_id,
            caller=replace(caller or CallerContext(), session_id=session_id),
            created_at=now,
            last_active_at=now,
        )
        self._sessions[session_id] = session
        logger.info("Opened session", session=session_id)
        return session

    def get_session(self, session_id: str) -> SessionRecord:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def close_session(self, session_id: str) -> None:
        """Forget a session. Its instances stay alive."""
        self._sessions.pop(session_id, None)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # Commands

    async def submit(self, session_id: str, idempotency_key: str, command: Command) -> Outcome:
        """
        Run ``command`` at most once per ``(session, idempotency_key)``.

        Raises:
            SessionNotFound: unknown session.
            InvalidPayload: the key was already used for a different command.
            InternalError: the command failed unexpectedly; nothing was
                recorded, so retrying with the same key is safe.
        """
        session = self.get_session(session_id)
        session.last_active_at = self.clock()
        cache_key = f"{session_id}:{idempotency_key}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            recorded_command, outcome = cached
            self._check_same_command(recorded_command, command, idempotency_key)
            self.metrics.record_idempotent_replay()
            logger.info("Replaying recorded outcome", session=session_id, key=idempotency_key)
            return replace(outcome, replayed=True)

        if self._flights.in_flight(cache_key):
            self._check_same_command(self._pending[cache_key], command, idempotency_key)
            logger.info("Joining in-flight command", session=session_id, key=idempotency_key)
        else:
            self._pending[cache_key] = command

        return await self._flights.run(
            cache_key, lambda: self._execute(session, cache_key, command)
        )

    @staticmethod
    def _check_same_command(recorded: Command, command: Command, idempotency_key: str) -> None:
        if recorded != command:
            raise InvalidPayload(
                "Idempotency key was already used for a different request",
                idempotency_key=idempotency_key,
            )

    async def _execute(self, session: SessionRecord, cache_key: str, command: Command) -> Outcome:
        try:
            result = await self._dispatch(session.caller, command)
        except InternalError:
            raise
        except FlowError as e:
            outcome = Outcome(error=e)
        else:
            outcome = Outcome(result=result)
            session.track(result.messages)
            self._forget_dismissed(result.messages)
        finally:
            self._pending.pop(cache_key, None)

        self._cache.put(cache_key, command, outcome)
        return outcome

    def _forget_dismissed(self, messages: list[OutboundMessage]) -> None:
        """A dismissed instance leaves every session's live set, not only the submitter's."""
        dismissed = {m.instance_id for m in messages if m.kind is MessageKind.DISMISSED}
        if not dismissed:
            return
        for session in self._sessions.values():
            for instance_id in dismissed:
                session.live_instances.pop(instance_id, None)

    async def _dispatch(self, caller: CallerContext, command: Command) -> OperationResult:
        core = self.orchestrator
        if isinstance(command, CreateCommand):
            return await core.create(
                command.capability_id,
                command.entities,
                parent_instance_id=command.parent_instance_id,
                caller=caller,
            )
        if isinstance(command, EventCommand):
            return await core.apply_event(command.instance_id, command.event, command.payload)
        if isinstance(command, PatchCommand):
            return await core.patch_render_data(command.instance_id, command.patch)
        if isinstance(command, DismissCommand):
            return await core.dismiss(command.instance_id, command.reason)
        raise TypeError(f"Unsupported command {type(command).__name__}")

    # Sync

    async def sync(
        self, session_id: str, known: list[KnownInstance]
    ) -> dict[str, list[OutboundMessage]]:
        """Replay what the session missed and update its delivery watermarks."""
        session = self.get_session(session_id)
        session.last_active_at = self.clock()

        unmentioned = [
            iid for iid in session.live_instances if iid not in {k.instance_id for k in known}
        ]
        replies = await self.orchestrator.sync(known, live=unmentioned)

        for instance_id, messages in replies.items():
            if any(m.kind is MessageKind.DISMISSED for m in messages):
                session.live_instances.pop(instance_id, None)
            elif messages:
                session.live_instances[instance_id] = messages[-1].message_seq
            else:
                last_seen = next(
                    (k.last_seen_seq for k in known if k.instance_id == instance_id), 0
                )
                session.live_instances.setdefault(instance_id, last_seen)

        logger.info(
            "Synced session",
            session=session_id,
            instances=len(replies),
            messages=sum(len(m) for m in replies.values()),
        )
        return replies

    # Expiry

    async def expire_idle(self, now: float | None = None) -> list[str]:
        """Expire idle instances, then drop them and idle empty sessions from bookkeeping."""
        now = now if now is not None else self.clock()
        expired = await self.orchestrator.expire_idle(now)

        for session in self._sessions.values():
            for instance_id in expired:
                session.live_instances.pop(instance_id, None)

        cutoff = now - self.config.idle_timeout_seconds
        stale = [
            sid
            for sid, session in self._sessions.items()
            if not session.live_instances and session.last_active_at < cutoff
        ]
        for sid in stale:
            del self._sessions[sid]

        purged = self._cache.purge()
        if stale or purged:
            logger.info(
                "Pruned idle sessions", sessions=len(stale), idempotency_entries=purged
            )
        return expired
