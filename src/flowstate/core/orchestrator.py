"""
Flow orchestration core.

Owns the lifecycle of flow instances: creation, event application through the
capability state machine, out-of-band render-data patches, dismissal and
reconnect sync. All correctness under concurrency comes from the instance
store's optimistic commit: an operation that loses a race reloads and runs
again from scratch, so evaluators and handlers must be safe to re-invoke.

Parent/child links are weak. Dismissing a parent never dismisses its
children; the link is only used for routing and queries.
"""

import contextlib
import copy
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, TypeVar

from ..config.settings import EngineConfig, SessionConfig
from ..observability.logging import get_logger, set_instance_id
from ..observability.metrics import MetricsCollector, get_metrics_collector
from ..observability.probe import probe
from ..storage.instances import (
    InstanceChanges,
    InstanceRecord,
    InstanceStore,
    LockToken,
    new_instance_id,
)
from .collaborators import (
    Ambiguous,
    CallerContext,
    HandlerInvocation,
    HandlerResult,
    IntentMatch,
    IntentResolver,
    maybe_await,
)
from .errors import (
    FlowError,
    GuardRejected,
    HandlerFailed,
    HydrationSchemaMismatch,
    InstanceNotFound,
    InternalError,
    IntentUnresolved,
    InvalidPayload,
    PermissionDenied,
    RecoveryHint,
    StateError,
    UnknownCapability,
    VersionConflict,
)
from .evaluator import Decision, evaluate
from .messages import MessageDraft, MessageKind, OutboundMessage
from .registry import Capability, RegistrySnapshot
from .runtime_patterns import RetriesExhausted, retry

logger = get_logger(__name__)

T = TypeVar("T")


class ProtocolState(Enum):
    """Orchestration-level state of an instance, independent of its capability machine."""

    ACTIVE = "active"
    FINALIZING = "finalizing"
    DISMISSED = "dismissed"


@dataclass(frozen=True)
class InstanceView:
    """Read-only snapshot of an instance as returned to callers."""

    instance_id: str
    capability_id: str
    state: str
    protocol_state: ProtocolState
    version: int
    render_data: dict[str, Any]
    context: dict[str, Any]
    valid_events: list[str]
    parent_instance_id: str | None
    last_message_seq: int
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "capability_id": self.capability_id,
            "state": self.state,
            "protocol_state": self.protocol_state.value,
            "version": self.version,
            "render_data": self.render_data,
            "context": self.context,
            "valid_events": self.valid_events,
            "parent_instance_id": self.parent_instance_id,
            "last_message_seq": self.last_message_seq,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class OperationResult:
    """What an operation produced: the resulting instance (if still visible) and its messages."""

    instance: InstanceView | None
    messages: list[OutboundMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance": self.instance.to_dict() if self.instance else None,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class KnownInstance:
    """An instance a reconnecting client already knows, with the last seq it saw."""

    instance_id: str
    last_seen_seq: int = 0


@dataclass
class _Outcome:
    changes: InstanceChanges
    draft: MessageDraft
    failed_effect: str | None = None
    events: list[str] = field(default_factory=list)


class FlowOrchestrator:
    """
    Stateless coordinator over a registry snapshot and an instance store.

    Any number of orchestrators, in any number of processes, may share one
    store. Operations on different instances never contend; operations on the
    same instance race to commit and the losers retry against the new state.
    """

    def __init__(
        self,
        registry: RegistrySnapshot,
        store: InstanceStore,
        engine_config: EngineConfig | None = None,
        session_config: SessionConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.store = store
        self.config = engine_config or EngineConfig()
        self.session_config = session_config or SessionConfig()
        self.metrics = metrics or get_metrics_collector()
        self.clock = clock

    # Helpers

    @contextlib.contextmanager
    def _internal_errors(self, op: str) -> Iterator[None]:
        """Let engine errors through; log anything else and hide it behind InternalError."""
        try:
            yield
        except FlowError:
            raise
        except Exception:
            logger.exception(f"{op} failed unexpectedly", op=op)
            raise InternalError(retry_after=self.config.internal_retry_after) from None

    async def _with_conflict_retry(
        self, operation: str, attempt: Callable[[int], Awaitable[T]]
    ) -> T:
        attempts_used = 0

        async def counted(n: int) -> T:
            nonlocal attempts_used
            attempts_used = n
            return await attempt(n)

        def on_conflict(error: Exception, n: int) -> None:
            self.metrics.record_conflict(operation)
            logger.info(f"Version conflict on {operation}, reloading", attempt=n)

        try:
            result = await retry(
                counted,
                attempts=self.config.max_commit_retries,
                base=self.config.commit_retry_backoff,
                is_retryable=lambda e: isinstance(e, VersionConflict),
                on_retry=on_conflict,
            )
        except RetriesExhausted as e:
            self.metrics.record_retries_exhausted(operation)
            logger.error(
                f"{operation} gave up after {e.attempts} conflicting commits", op=operation
            )
            raise InternalError(retry_after=self.config.internal_retry_after) from None

        self.metrics.record_commit_attempts(operation, attempts_used)
        return result

    def _protocol_state(self, capability: Capability, record: InstanceRecord) -> ProtocolState:
        if record.dismissed:
            return ProtocolState.DISMISSED
        if capability.machine.is_final(record.current_state):
            return ProtocolState.FINALIZING
        return ProtocolState.ACTIVE

    def _view(self, record: InstanceRecord) -> InstanceView:
        capability = self.registry.resolve(record.capability_id)
        return InstanceView(
            instance_id=record.instance_id,
            capability_id=record.capability_id,
            state=record.current_state,
            protocol_state=self._protocol_state(capability, record),
            version=record.version,
            render_data=copy.deepcopy(record.render_data),
            context=copy.deepcopy(record.context),
            valid_events=capability.machine.valid_events(record.current_state),
            parent_instance_id=record.parent_instance_id,
            last_message_seq=record.last_message_seq,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def _state_payload(
        self, capability: Capability, state: str, render_data: dict[str, Any]
    ) -> dict[str, Any]:
        machine = capability.machine
        return {
            "state": state,
            "render_data": render_data,
            "valid_events": machine.valid_events(state),
            "protocol_state": (
                ProtocolState.FINALIZING if machine.is_final(state) else ProtocolState.ACTIVE
            ).value,
        }

    async def _load_live(self, instance_id: str) -> tuple[InstanceRecord, LockToken]:
        """Load for update, treating dismissed instances as nonexistent."""
        record, token = await self.store.load_for_update(instance_id)
        if record.dismissed:
            raise InstanceNotFound(instance_id)
        return record, token

    def _check_permissions(self, capability: Capability, caller: CallerContext) -> None:
        missing = capability.required_permissions - caller.permissions
        if missing:
            raise PermissionDenied(
                f"Not permitted to start '{capability.capability_id}'", missing=sorted(missing)
            )

    # Create

    async def create(
        self,
        capability_id: str,
        entities: Mapping[str, Any],
        parent_instance_id: str | None = None,
        caller: CallerContext | None = None,
    ) -> OperationResult:
        """
        Start a new instance of ``capability_id``.

        Raises:
            UnknownCapability, PermissionDenied, InvalidEntities,
            HydrationFailed, HydrationSchemaMismatch, InstanceNotFound (parent).
        """
        caller = caller or CallerContext()
        with probe("orchestrator.create", capability=capability_id), self._internal_errors(
            "create"
        ):
            capability = self.registry.resolve(capability_id)
            self._check_permissions(capability, caller)
            seed = capability.validate_entities(entities)

            if parent_instance_id is not None:
                parent = await self.store.load(parent_instance_id)
                if parent is None or parent.dismissed:
                    raise InstanceNotFound(parent_instance_id)

            hydrated = await maybe_await(capability.definition.hydrator(dict(seed), caller))
            if not isinstance(hydrated, Mapping):
                raise HydrationSchemaMismatch(
                    f"Hydrator for '{capability_id}' returned {type(hydrated).__name__}"
                )
            render_data = capability.validate_render_data(hydrated)

            initial = capability.machine.initial.value
            draft = MessageDraft(
                MessageKind.CREATED, self._state_payload(capability, initial, render_data)
            )
            result = await self.store.create(
                capability_id,
                seed,
                initial,
                render_data,
                draft,
                parent_instance_id=parent_instance_id,
            )

            set_instance_id(result.record.instance_id)
            self.metrics.record_created(capability_id)
            logger.info(
                f"Created {capability_id} instance",
                parent=parent_instance_id or "-",
                state=initial,
            )
            return OperationResult(self._view(result.record), result.messages)

    async def create_from_intent(
        self,
        resolver: IntentResolver,
        text: str,
        caller: CallerContext | None = None,
        parent_instance_id: str | None = None,
    ) -> OperationResult:
        """Resolve free text to a capability and create it when the match is confident."""
        caller = caller or CallerContext()
        resolution = await resolver.resolve(text, dict(caller.attributes))

        if isinstance(resolution, IntentMatch):
            if resolution.confidence >= self.config.intent_confidence_floor:
                return await self.create(
                    resolution.capability_id,
                    resolution.entities,
                    parent_instance_id=parent_instance_id,
                    caller=caller,
                )
            raise IntentUnresolved(
                "The request could not be matched confidently",
                candidates=[resolution.capability_id],
            )
        if isinstance(resolution, Ambiguous):
            raise IntentUnresolved(
                "The request matches more than one capability",
                candidates=[c.capability_id for c in resolution.candidates],
            )
        raise IntentUnresolved(f"The request did not match any capability: {resolution.reason}")

    # Events

    async def apply_event(
        self,
        instance_id: str,
        event: str,
        payload: Mapping[str, Any] | None = None,
    ) -> OperationResult:
        """
        Apply ``event`` to an instance.

        On success the version increases by exactly one and exactly one
        ``transitioned`` or ``failed`` message is emitted. Rejected events
        (InvalidTransition, GuardRejected, InvalidPayload) change nothing.
        """
        set_instance_id(instance_id)
        raw_payload = dict(payload or {})

        async def attempt(n: int) -> OperationResult:
            record, token = await self._load_live(instance_id)
            capability = self.registry.resolve(record.capability_id)
            machine = capability.machine

            checked = raw_payload
            if machine.has_edge(record.current_state, event):
                checked = capability.validate_payload(event, raw_payload)

            try:
                decision = evaluate(machine, record.current_state, event, checked, record.context)
            except StateError as e:
                self.metrics.record_rejection(record.capability_id, e.code)
                logger.info(
                    f"Rejected event {event}", state=record.current_state, code=e.code
                )
                raise

            outcome = await self._run_effects(capability, record, decision, checked)
            result = await self.store.commit(token, outcome.changes, [outcome.draft])

            if outcome.failed_effect:
                self.metrics.record_handler_failure(record.capability_id, outcome.failed_effect)
            else:
                self.metrics.record_transition(record.capability_id, event)
            logger.info(
                f"Applied {event}",
                from_state=record.current_state,
                to_state=result.record.current_state,
                version=result.record.version,
                failed=bool(outcome.failed_effect),
            )
            return OperationResult(self._view(result.record), result.messages)

        with probe("orchestrator.apply_event", event=event), self._internal_errors(
            "apply_event"
        ):
            return await self._with_conflict_retry("apply_event", attempt)

    async def _run_effects(
        self,
        capability: Capability,
        record: InstanceRecord,
        decision: Decision,
        payload: dict[str, Any],
    ) -> _Outcome:
        """
        Run the edge's handler and any follow-up events it names, computing the
        state to commit. Nothing is written here.
        """
        machine = capability.machine
        context = copy.deepcopy(record.context)
        render_data = copy.deepcopy(record.render_data)
        path = [decision.source]
        events = [decision.event]
        render_changed = False
        current = decision

        for depth in range(self.config.max_chained_events + 1):
            follow_up = None
            if current.effect:
                invocation = HandlerInvocation(
                    instance_id=record.instance_id,
                    capability_id=record.capability_id,
                    state=current.source,
                    event=current.event,
                    context=MappingProxyType(copy.deepcopy(context)),
                    render_data=MappingProxyType(copy.deepcopy(render_data)),
                    payload=MappingProxyType(payload if depth == 0 else {}),
                )
                try:
                    result = await maybe_await(capability.handler(current.effect)(invocation))
                except HandlerFailed as failure:
                    return self._failure_outcome(
                        capability, record, current, failure, context, render_data, events
                    )
                result = result or HandlerResult()
                context.update(result.context_patch)
                if result.render_data_patch:
                    render_data = capability.validate_render_data(
                        {**render_data, **result.render_data_patch}
                    )
                    render_changed = True
                follow_up = result.event

            path.append(current.target)
            if follow_up is None:
                break
            if depth == self.config.max_chained_events:
                raise RuntimeError(
                    f"{record.capability_id}: follow-up events exceeded "
                    f"{self.config.max_chained_events} after {events}"
                )
            # A handler naming an event its machine rejects is a capability bug
            try:
                current = evaluate(machine, current.target, follow_up, {}, context)
            except StateError as e:
                raise RuntimeError(
                    f"{record.capability_id}: handler proposed {follow_up} "
                    f"from {path[-1]}: {e.code}"
                ) from e
            events.append(follow_up)

        final_state = path[-1]
        payload_out = self._state_payload(capability, final_state, render_data)
        payload_out.update(
            {
                "from_state": record.current_state,
                "event": decision.event,
                "events": events,
                "path": path,
            }
        )
        return _Outcome(
            changes=InstanceChanges(
                current_state=final_state,
                context=context,
                render_data=render_data if render_changed else None,
            ),
            draft=MessageDraft(MessageKind.TRANSITIONED, payload_out),
            events=events,
        )

    def _failure_outcome(
        self,
        capability: Capability,
        record: InstanceRecord,
        failing: Decision,
        failure: HandlerFailed,
        context: dict[str, Any],
        render_data: dict[str, Any],
        events: list[str],
    ) -> _Outcome:
        """
        A handler failed: stay on the failing edge's source state unless the
        machine defines an explicit failure edge from there, and record the error.
        """
        machine = capability.machine
        failure_event = self.config.failure_event
        state = failing.source

        if machine.has_edge(state, failure_event):
            try:
                # The failure edge's own effect is not run; it only routes state
                state = evaluate(machine, state, failure_event, {}, context).target
            except GuardRejected:
                pass

        context["last_error"] = {
            "code": failure.code,
            "message": failure.user_message,
            "effect": failing.effect,
            "event": failing.event,
        }

        recovery = failure.recovery or self._recovery_hint(capability, state)
        payload_out = self._state_payload(capability, state, render_data)
        payload_out.update(
            {
                "from_state": record.current_state,
                "event": events[0],
                "error": {"code": failure.code, "message": failure.user_message},
                "recovery": recovery.value,
            }
        )
        logger.warning(
            f"Handler {failing.effect} failed: {failure.user_message}",
            recovery=recovery.value,
            state=state,
        )
        return _Outcome(
            changes=InstanceChanges(current_state=state, context=context, render_data=render_data),
            draft=MessageDraft(MessageKind.FAILED, payload_out),
            failed_effect=failing.effect,
            events=events,
        )

    def _recovery_hint(self, capability: Capability, state: str) -> RecoveryHint:
        valid = capability.machine.valid_events(state)
        if self.config.retry_event in valid:
            return RecoveryHint.RETRY
        if valid:
            return RecoveryHint.MODIFY
        return RecoveryHint.DISMISS

    # Render-data patches

    async def patch_render_data(
        self, instance_id: str, patch: Mapping[str, Any]
    ) -> OperationResult:
        """Merge ``patch`` into render data without touching the capability state."""
        set_instance_id(instance_id)
        patch = dict(patch)

        async def attempt(n: int) -> OperationResult:
            record, token = await self._load_live(instance_id)
            capability = self.registry.resolve(record.capability_id)
            merged = capability.validate_render_data(
                {**record.render_data, **patch}, error_cls=InvalidPayload
            )
            draft = MessageDraft(
                MessageKind.DATA_PATCHED,
                {"patch": patch, "render_data": merged, "state": record.current_state},
            )
            result = await self.store.commit(token, InstanceChanges(render_data=merged), [draft])
            return OperationResult(self._view(result.record), result.messages)

        with probe("orchestrator.patch_render_data"), self._internal_errors("patch_render_data"):
            return await self._with_conflict_retry("patch_render_data", attempt)

    # Dismissal

    async def dismiss(self, instance_id: str, reason: str = "dismissed") -> OperationResult:
        """
        Move an instance to the terminal Dismissed state from any protocol state.

        Idempotent: dismissing an already dismissed instance succeeds and emits
        nothing. Children are left untouched.
        """
        set_instance_id(instance_id)

        async def attempt(n: int) -> OperationResult:
            record, token = await self.store.load_for_update(instance_id)
            if record.dismissed:
                return OperationResult(None, [])
            draft = MessageDraft(MessageKind.DISMISSED, {"reason": reason})
            result = await self.store.dismiss(token, reason, draft)
            self.metrics.record_dismissal(reason)
            logger.info("Dismissed instance", reason=reason, version=result.record.version)
            return OperationResult(None, result.messages)

        with probe("orchestrator.dismiss"), self._internal_errors("dismiss"):
            return await self._with_conflict_retry("dismiss", attempt)

    async def acknowledge(self, instance_id: str) -> OperationResult:
        """Caller has seen the final state; dismiss the instance."""
        return await self.dismiss(instance_id, "acknowledged")

    async def expire_idle(self, now: float | None = None) -> list[str]:
        """Dismiss instances idle past the configured timeout; returns their ids."""
        now = now if now is not None else self.clock()
        cutoff = now - self.session_config.idle_timeout_seconds
        expired = []
        for instance_id in await self.store.list_idle(cutoff):
            result = await self.dismiss(instance_id, "expired")
            if result.messages:
                expired.append(instance_id)
        if expired:
            logger.info(f"Expired {len(expired)} idle instances")
        return expired

    # Migration

    async def migrate(
        self,
        instance_id: str,
        to_capability_id: str,
        caller: CallerContext | None = None,
    ) -> OperationResult:
        """
        Carry an instance forward to a newer capability version.

        The old instance is dismissed with reason ``migrated:<new id>`` through a
        conditional commit, and only the writer whose dismissal wins creates the
        successor. A concurrent write to the old instance forces a reload, so
        the migration always starts from the latest committed snapshot.
        """
        caller = caller or CallerContext()
        set_instance_id(instance_id)

        async def attempt(n: int) -> tuple[InstanceRecord, OperationResult]:
            record, token = await self._load_live(instance_id)
            migration = self.registry.migration(record.capability_id, to_capability_id)
            if migration is None:
                raise UnknownCapability(
                    f"No migration from '{record.capability_id}' to '{to_capability_id}'",
                    capability_id=to_capability_id,
                )
            target = self.registry.resolve(to_capability_id)
            self._check_permissions(target, caller)

            state, context, render_data = migration(
                record.current_state,
                copy.deepcopy(record.context),
                copy.deepcopy(record.render_data),
            )
            target.machine.state(state)
            render_data = target.validate_render_data(render_data)

            new_id = new_instance_id()
            reason = f"migrated:{new_id}"
            dismissed = await self.store.dismiss(
                token, reason, MessageDraft(MessageKind.DISMISSED, {"reason": reason})
            )
            self.metrics.record_dismissal(reason)

            payload = self._state_payload(target, state, render_data)
            payload["migrated_from"] = record.instance_id
            created = await self.store.create(
                to_capability_id,
                record.entities,
                state,
                render_data,
                MessageDraft(MessageKind.CREATED, payload),
                parent_instance_id=record.parent_instance_id,
                context=context,
                instance_id=new_id,
            )
            return record, OperationResult(
                self._view(created.record), created.messages + dismissed.messages
            )

        with probe("orchestrator.migrate", to=to_capability_id), self._internal_errors("migrate"):
            record, result = await self._with_conflict_retry("migrate", attempt)
            logger.info(
                f"Migrated {record.capability_id} -> {to_capability_id}",
                new_instance=result.instance.instance_id,
            )
            return result

    # Queries

    async def get_instance(self, instance_id: str) -> InstanceView:
        record = await self.store.load(instance_id)
        if record is None or record.dismissed:
            raise InstanceNotFound(instance_id)
        return self._view(record)

    async def list_children(self, instance_id: str) -> list[str]:
        await self.get_instance(instance_id)
        return await self.store.list_children(instance_id)

    # Sync

    async def sync(
        self,
        known: list[KnownInstance],
        live: Iterable[str] = (),
    ) -> dict[str, list[OutboundMessage]]:
        """
        Bring a reconnecting client up to date.

        For each known instance return the retained messages after its
        ``last_seen_seq`` in order, or one resynchronizing ``created`` snapshot
        when the gap is too large or no longer retained. Dismissed (and unknown)
        instances yield a bare ``dismissed`` message. Ids in ``live`` that the
        client did not mention are replayed from the beginning.
        """
        wanted: dict[str, int] = {k.instance_id: k.last_seen_seq for k in known}
        for instance_id in live:
            wanted.setdefault(instance_id, 0)

        with probe("orchestrator.sync", instances=len(wanted)), self._internal_errors("sync"):
            return {
                instance_id: await self._sync_one(instance_id, last_seen)
                for instance_id, last_seen in wanted.items()
            }

    async def _sync_one(self, instance_id: str, last_seen: int) -> list[OutboundMessage]:
        record = await self.store.load(instance_id)
        if record is None or record.dismissed:
            return [
                OutboundMessage(
                    instance_id=instance_id,
                    capability_id=record.capability_id if record else "",
                    kind=MessageKind.DISMISSED,
                    version=record.version if record else 0,
                    message_seq=record.last_message_seq if record else 0,
                    emitted_at=self.clock(),
                )
            ]

        gap = record.last_message_seq - last_seen
        if gap == 0:
            return []
        if 0 < gap <= self.session_config.sync_replay_threshold:
            backlog = await self.store.messages_since(instance_id, last_seen)
            if backlog and backlog[0].message_seq == last_seen + 1:
                return backlog

        self.metrics.record_sync_snapshot()
        capability = self.registry.resolve(record.capability_id)
        payload = self._state_payload(capability, record.current_state, record.render_data)
        payload["resync"] = True
        return [
            OutboundMessage(
                instance_id=instance_id,
                capability_id=record.capability_id,
                kind=MessageKind.CREATED,
                version=record.version,
                message_seq=record.last_message_seq,
                payload=payload,
                parent_instance_id=record.parent_instance_id,
                emitted_at=self.clock(),
            )
        ]

    async def health_check(self) -> dict[str, Any]:
        try:
            store_ok = await self.store.health_check()
        except Exception as e:
            logger.error(f"Store health check failed: {e}")
            store_ok = False
        return {
            "overall": store_ok,
            "store": store_ok,
            "capabilities": self.registry.ids(),
            "totals": self.metrics.get_totals(),
        }
