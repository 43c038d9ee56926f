# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import time
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ..core.types import PresenceStatus


@dataclass
class PresenceRecord:
    """Presence of one user. Live connection count is read from the registry."""

    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    custom_status: str = ""
    explicit: bool = False
    last_seen: float = field(default_factory=time.time)


@runtime_checkable
class PresenceStore(Protocol):
    """Where presence records live.

    The in-memory default keeps presence per process.  A deployment running
    several server processes plugs a shared implementation in here.
    """

    def get(self, user_id: str) -> PresenceRecord | None: ...

    def get_or_create(self, user_id: str) -> PresenceRecord: ...

    def remove(self, user_id: str) -> None: ...

    def records(self) -> list[PresenceRecord]: ...


class InMemoryPresenceStore:
    def __init__(self):
        self._records: dict[str, PresenceRecord] = {}

    def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    def get_or_create(self, user_id: str) -> PresenceRecord:
        record = self._records.get(user_id)
        if record is None:
            record = PresenceRecord(user_id=user_id)
            self._records[user_id] = record
        return record

    def remove(self, user_id: str) -> None:
        self._records.pop(user_id, None)

    def records(self) -> list[PresenceRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)
