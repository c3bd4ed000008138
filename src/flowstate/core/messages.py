"""
Outbound protocol messages.

Every message names its instance, the instance ``version`` it reflects and a
``message_seq`` that increases strictly per instance. Sequence numbers are
assigned by the instance store inside the commit that produced the message.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageKind(Enum):
    CREATED = "created"
    TRANSITIONED = "transitioned"
    DATA_PATCHED = "dataPatched"
    DISMISSED = "dismissed"
    FAILED = "failed"


@dataclass(frozen=True)
class MessageDraft:
    """A message waiting for the store to stamp it with version and sequence."""

    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundMessage:
    instance_id: str
    capability_id: str
    kind: MessageKind
    version: int
    message_seq: int
    payload: dict[str, Any] = field(default_factory=dict)
    parent_instance_id: str | None = None
    emitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "instance_id": self.instance_id,
            "kind": self.kind.value,
            "version": self.version,
            "message_seq": self.message_seq,
            "payload": self.payload,
            "emitted_at": self.emitted_at,
        }
        if self.kind is MessageKind.CREATED:
            data["capability_id"] = self.capability_id
            data["parent_instance_id"] = self.parent_instance_id
        return data
