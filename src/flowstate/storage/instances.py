"""
Instance storage with optimistic concurrency.

``load_for_update`` hands out a ``LockToken`` that only records the version the
caller saw; it blocks nobody. ``commit`` succeeds only while the stored version
still equals the token's, so among concurrent writers exactly one wins and the
rest get ``VersionConflict`` and must reload.

Records are never physically deleted: dismissal sets a terminal marker and the
recent message log is kept for sync replay.
"""

import copy
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..core.errors import InstanceNotFound, VersionConflict
from ..core.messages import MessageDraft, OutboundMessage
from ..observability.logging import get_logger

log = get_logger("flowstate.storage")


@dataclass
class InstanceRecord:
    """Stored state of one flow instance."""

    instance_id: str
    capability_id: str
    current_state: str
    entities: dict[str, Any]
    context: dict[str, Any]
    render_data: dict[str, Any]
    version: int
    created_at: float
    updated_at: float
    parent_instance_id: str | None = None
    dismissed: bool = False
    dismiss_reason: str | None = None
    last_message_seq: int = 0

    def snapshot(self) -> "InstanceRecord":
        """Deep copy so callers can never mutate stored state."""
        return copy.deepcopy(self)


@dataclass(frozen=True)
class LockToken:
    """Proof of the version a writer loaded; not a lock."""

    instance_id: str
    expected_version: int


@dataclass
class InstanceChanges:
    """Fields to replace in one atomic commit. ``None`` leaves a field untouched."""

    current_state: str | None = None
    context: dict[str, Any] | None = None
    render_data: dict[str, Any] | None = None
    dismiss_reason: str | None = None


@dataclass
class CommitResult:
    record: InstanceRecord
    messages: list[OutboundMessage] = field(default_factory=list)


def new_instance_id() -> str:
    return uuid.uuid4().hex


class InstanceStore(ABC):
    """Abstract durable store for flow instances and their recent messages."""

    def __init__(self, message_retention: int = 200, clock: Callable[[], float] = time.time):
        self.message_retention = message_retention
        self.clock = clock

    @abstractmethod
    async def create(
        self,
        capability_id: str,
        seed_entities: dict[str, Any],
        initial_state: str,
        render_data: dict[str, Any],
        created_message: MessageDraft,
        parent_instance_id: str | None = None,
        context: dict[str, Any] | None = None,
        instance_id: str | None = None,
    ) -> CommitResult:
        """
        Insert a new instance at version 1 together with its ``created`` message.

        ``instance_id`` lets a caller reserve the id before the insert; a fresh
        one is generated when omitted.
        """
        ...

    @abstractmethod
    async def load(self, instance_id: str) -> InstanceRecord | None:
        """Return a copy of the record, dismissed or not, or None."""
        ...

    async def load_for_update(self, instance_id: str) -> tuple[InstanceRecord, LockToken]:
        """Load a record plus a token for a later ``commit``."""
        record = await self.load(instance_id)
        if record is None:
            raise InstanceNotFound(instance_id)
        return record, LockToken(instance_id, record.version)

    @abstractmethod
    async def commit(
        self,
        token: LockToken,
        changes: InstanceChanges,
        messages: list[MessageDraft],
    ) -> CommitResult:
        """
        Apply ``changes`` and append ``messages`` atomically, bumping ``version`` by one.

        Raises:
            VersionConflict: another writer committed after the token was issued.
            InstanceNotFound: the instance does not exist.
        """
        ...

    async def dismiss(
        self, token: LockToken, reason: str, message: MessageDraft
    ) -> CommitResult:
        """Mark an instance terminal without deleting it."""
        return await self.commit(token, InstanceChanges(dismiss_reason=reason), [message])

    @abstractmethod
    async def messages_since(self, instance_id: str, after_seq: int) -> list[OutboundMessage]:
        """Retained messages with ``message_seq > after_seq`` in sequence order."""
        ...

    async def latest_seq(self, instance_id: str) -> int:
        """Highest ``message_seq`` issued for the instance, 0 when unknown."""
        record = await self.load(instance_id)
        return record.last_message_seq if record else 0

    @abstractmethod
    async def list_children(self, parent_instance_id: str) -> list[str]:
        ...

    @abstractmethod
    async def list_idle(self, updated_before: float) -> list[str]:
        """Ids of live instances not updated since ``updated_before``."""
        ...

    async def close(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True

    def _stamp(
        self, record: InstanceRecord, drafts: list[MessageDraft], now: float
    ) -> list[OutboundMessage]:
        """Turn drafts into messages with the record's version and fresh sequence numbers."""
        messages = []
        for draft in drafts:
            record.last_message_seq += 1
            messages.append(
                OutboundMessage(
                    instance_id=record.instance_id,
                    capability_id=record.capability_id,
                    kind=draft.kind,
                    version=record.version,
                    message_seq=record.last_message_seq,
                    payload=copy.deepcopy(draft.payload),
                    parent_instance_id=record.parent_instance_id,
                    emitted_at=now,
                )
            )
        return messages


def apply_changes(record: InstanceRecord, changes: InstanceChanges, now: float) -> None:
    if changes.current_state is not None:
        record.current_state = changes.current_state
    if changes.context is not None:
        record.context = copy.deepcopy(changes.context)
    if changes.render_data is not None:
        record.render_data = copy.deepcopy(changes.render_data)
    if changes.dismiss_reason is not None:
        record.dismissed = True
        record.dismiss_reason = changes.dismiss_reason
    record.version += 1
    record.updated_at = now


class InMemoryInstanceStore(InstanceStore):
    """
    Process-local store.

    Each compare-and-set runs without awaiting, so it is atomic with respect
    to other coroutines on the event loop.
    """

    def __init__(self, message_retention: int = 200, clock: Callable[[], float] = time.time):
        super().__init__(message_retention, clock)
        self._records: dict[str, InstanceRecord] = {}
        self._messages: dict[str, deque[OutboundMessage]] = {}
        log.info("In-memory instance store initialized", retention=message_retention)

    async def create(
        self,
        capability_id: str,
        seed_entities: dict[str, Any],
        initial_state: str,
        render_data: dict[str, Any],
        created_message: MessageDraft,
        parent_instance_id: str | None = None,
        context: dict[str, Any] | None = None,
        instance_id: str | None = None,
    ) -> CommitResult:
        now = self.clock()
        record = InstanceRecord(
            instance_id=instance_id or new_instance_id(),
            capability_id=capability_id,
            current_state=initial_state,
            entities=copy.deepcopy(seed_entities),
            context=copy.deepcopy(context or {}),
            render_data=copy.deepcopy(render_data),
            version=1,
            created_at=now,
            updated_at=now,
            parent_instance_id=parent_instance_id,
        )
        messages = self._stamp(record, [created_message], now)
        self._records[record.instance_id] = record
        self._messages[record.instance_id] = deque(messages, maxlen=self.message_retention)
        return CommitResult(record.snapshot(), copy.deepcopy(messages))

    async def load(self, instance_id: str) -> InstanceRecord | None:
        record = self._records.get(instance_id)
        return record.snapshot() if record else None

    async def commit(
        self,
        token: LockToken,
        changes: InstanceChanges,
        messages: list[MessageDraft],
    ) -> CommitResult:
        record = self._records.get(token.instance_id)
        if record is None:
            raise InstanceNotFound(token.instance_id)
        if record.version != token.expected_version:
            raise VersionConflict(token.instance_id, token.expected_version, record.version)

        now = self.clock()
        apply_changes(record, changes, now)
        stamped = self._stamp(record, messages, now)
        self._messages[record.instance_id].extend(stamped)
        return CommitResult(record.snapshot(), copy.deepcopy(stamped))

    async def messages_since(self, instance_id: str, after_seq: int) -> list[OutboundMessage]:
        return [
            copy.deepcopy(m)
            for m in self._messages.get(instance_id, ())
            if m.message_seq > after_seq
        ]

    async def list_children(self, parent_instance_id: str) -> list[str]:
        return [
            r.instance_id
            for r in self._records.values()
            if r.parent_instance_id == parent_instance_id
        ]

    async def list_idle(self, updated_before: float) -> list[str]:
        return [
            r.instance_id
            for r in self._records.values()
            if not r.dismissed and r.updated_at < updated_before
        ]
