"""Message and request value types shared by the storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Message:
    """A single record stored in a partition log."""

    topic: str = ""
    partition: int = 0
    offset: int = 0
    key: str = ""
    value: str = ""
    timestamp: datetime | None = None
    headers: dict[str, bytes | None] = field(default_factory=dict)

    def timestamp_ms(self) -> int:
        """Milliseconds since the Unix epoch; an unset timestamp counts as the epoch."""
        if self.timestamp is None:
            return 0
        stamp = self.timestamp
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return (stamp - _EPOCH) // timedelta(milliseconds=1)


@dataclass
class ReadOptions:
    """Limits for a fetch; zero means the reader picks a default."""

    max_messages: int = 0
    max_bytes: int = 0
    min_bytes: int = 0


@dataclass
class FromTopic:
    """A topic partition together with an offset."""

    topic: str = ""
    partition: int = 0
    offset: int = 0