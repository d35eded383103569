"""Cluster metadata kept in step with the controller's replicated log."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Protocol

from .message import FromTopic

logger = logging.getLogger(__name__)

DEFAULT_STABLE_DELAY = 4.0


class NotLeaderError(Exception):
    """Raised by a broker that does not lead the requested partition."""

    def __init__(self, partition_id: int, topic: str) -> None:
        self.partition_id = partition_id
        self.topic = topic
        self.message = f"Not leader of {topic}-{partition_id}"
        super().__init__(self.message)


def is_not_leader_error(error: BaseException | None) -> bool:
    """Whether ``error`` or anything in its cause chain is a :class:`NotLeaderError`."""
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, NotLeaderError):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


@dataclass
class BrokerInfo:
    id: str = ""
    address: str = ""
    alive: bool = False
    last_seen: datetime | None = None


@dataclass
class PartitionInfo:
    id: int = 0
    topic_name: str = ""
    leader: str = ""
    leader_address: str = ""
    replicas: list[str] = field(default_factory=list)
    isr: list[str] = field(default_factory=list)
    epoch: int = 0
    offset: int = 0
    committed_offset: int = 0


@dataclass
class TopicInfo:
    name: str = ""
    replication_factor: int = 0
    partitions: dict[int, PartitionInfo] = field(default_factory=dict)


@dataclass
class Metadata:
    brokers: dict[str, BrokerInfo] = field(default_factory=dict)
    topics: dict[str, TopicInfo] = field(default_factory=dict)
    last_index: int = 0


class CommandType(enum.Enum):
    CREATE_TOPIC = "create_topic"
    REGISTER_BROKER = "register_broker"
    UPDATE_BROKER = "update_broker"
    CHANGE_PARTITION_LEADER = "change_partition_leader"
    ALTER_PARTITION = "alter_partition"


@dataclass
class LeaderAssignment:
    topic_id: str = ""
    partition_id: int = 0
    new_leader: str = ""
    new_isr: list[str] = field(default_factory=list)
    new_replicas: list[str] = field(default_factory=list)
    new_epoch: int = 0


@dataclass
class PartitionChange:
    topic: str = ""
    partition: int = 0
    new_isr: list[str] = field(default_factory=list)


@dataclass
class Command:
    """A metadata command; which fields matter depends on ``type``."""

    type: CommandType
    topic: str = ""
    n_partitions: int = 0
    replication_factor: int = 0
    broker: BrokerInfo | None = None
    assignments: list[LeaderAssignment] = field(default_factory=list)
    changes: list[PartitionChange] = field(default_factory=list)


@dataclass
class LogEntry:
    index: int = 0
    command: Command | None = None


class _MetadataClient(Protocol):
    def apply_create_topic(self, command: Command) -> None: ...
    def apply_register_broker(self, command: Command) -> None: ...
    def apply_update_broker(self, command: Command) -> None: ...
    def apply_update_partition_leader(self, command: Command) -> None: ...


class ClusterMetadata:
    """Brokers and topics of the cluster, with a stability notification.

    When no change has been applied for ``stable_delay`` seconds the cluster
    counts as stable and the function set by :meth:`set_stable_func` is
    called once, until the next change.
    """

    def __init__(
        self,
        shutdown_event: threading.Event | None = None,
        stable_delay: float = DEFAULT_STABLE_DELAY,
    ) -> None:
        self.metadata = Metadata()
        self._lock = threading.RLock()
        self._stable_delay = stable_delay
        self._deadline = time.monotonic() + stable_delay
        self._stable = False
        self._on_stable: Callable[[], None] | None = None
        self._shutdown_event = shutdown_event if shutdown_event is not None else threading.Event()
        self._timer = threading.Thread(target=self._run_stable_timer, name="cluster-stable", daemon=True)
        self._timer.start()

    @property
    def stable(self) -> bool:
        with self._lock:
            return self._stable

    # ------------------------------------------------------------------ queries

    def fetch_metadata(self, index: int) -> Metadata | None:
        """The metadata, or ``None`` when ``index`` is already the latest."""
        with self._lock:
            if index == self.metadata.last_index:
                return None
            return self.metadata

    def update_metadata(self, metadata: Metadata) -> None:
        with self._lock:
            self.metadata = metadata

    def _partition(self, topic: str, partition: int) -> PartitionInfo:
        info = self.metadata.topics.get(topic)
        if info is None:
            raise LookupError(f"cannot find topic {topic}")
        part = info.partitions.get(partition)
        if part is None:
            raise LookupError(f"cannot find partition {partition} on topic {topic}")
        return part

    def update_offset(self, topic: str, partition: int, offset: int) -> None:
        with self._lock:
            self._partition(topic, partition).offset = offset

    def partition_count(self, topic: str) -> int:
        with self._lock:
            info = self.metadata.topics.get(topic)
            if info is None:
                raise LookupError(f"cannot find topic {topic}")
            return len(info.partitions)

    def topic(self, name: str) -> TopicInfo | None:
        with self._lock:
            return self.metadata.topics.get(name)

    def topics(self) -> dict[str, TopicInfo]:
        with self._lock:
            return self.metadata.topics

    def brokers(self) -> dict[str, BrokerInfo]:
        with self._lock:
            return self.metadata.brokers

    def set_stable_func(self, func: Callable[[], None] | None) -> None:
        self._on_stable = func

    # ------------------------------------------------------------------ commands

    def decode_log(self, entry: LogEntry, client: _MetadataClient) -> None:
        """Apply one controller log entry here and on ``client``."""
        command = entry.command
        if command is None:
            return
        with self._lock:
            self.metadata.last_index = entry.index
        kind = command.type
        if kind is CommandType.CREATE_TOPIC:
            self.create_topic(command)
            client.apply_create_topic(command)
        elif kind is CommandType.REGISTER_BROKER:
            if command.broker is not None:
                self.register_broker(command)
                client.apply_register_broker(command)
        elif kind is CommandType.UPDATE_BROKER:
            if command.broker is not None:
                self.update_broker(command)
                client.apply_update_broker(command)
        elif kind is CommandType.CHANGE_PARTITION_LEADER:
            self.update_partition_leader(command)
            client.apply_update_partition_leader(command)
        elif kind is CommandType.ALTER_PARTITION:
            self.alter_partition(command)
        else:
            logger.warning("unknown metadata command: %r", command)

    def update_partition_leader(self, command: Command) -> None:
        self._reset_stable_timer()
        with self._lock:
            for assignment in command.assignments:
                info = self.metadata.topics.get(assignment.topic_id)
                if info is None:
                    continue
                part = info.partitions.get(assignment.partition_id)
                if part is None:
                    continue
                part.leader = assignment.new_leader
                broker = self.metadata.brokers.get(part.leader)
                part.leader_address = broker.address if broker is not None else ""
                part.isr = list(assignment.new_isr)
                part.replicas = list(assignment.new_replicas)
                part.epoch = assignment.new_epoch

    def update_broker(self, command: Command) -> None:
        self._reset_stable_timer()
        update = command.broker
        if update is None:
            return
        with self._lock:
            broker = self.metadata.brokers.get(update.id)
            if broker is None:
                return
            broker.address = update.address
            broker.last_seen = update.last_seen
            broker.alive = update.alive

    def register_broker(self, command: Command) -> None:
        self._reset_stable_timer()
        info = command.broker
        if info is None:
            return
        with self._lock:
            self.metadata.brokers[info.id] = BrokerInfo(
                id=info.id, address=info.address, alive=info.alive, last_seen=info.last_seen
            )

    def create_topic(self, command: Command) -> None:
        self._reset_stable_timer()
        with self._lock:
            partitions = {
                number: PartitionInfo(
                    id=number,
                    topic_name=command.topic,
                    replicas=[""] * command.replication_factor,
                )
                for number in range(command.n_partitions)
            }
            self.metadata.topics[command.topic] = TopicInfo(
                name=command.topic,
                replication_factor=command.replication_factor,
                partitions=partitions,
            )

    def partition_leader(self, topic: str, partition: int) -> tuple[str, str]:
        """Return the leader's broker id and address for a partition."""
        self._reset_stable_timer()
        with self._lock:
            info = self.metadata.topics.get(topic)
            if info is None:
                raise LookupError(f"cannot find topic {topic}")
            part = info.partitions.get(partition)
            if part is None:
                raise LookupError(f"cannot find partition {partition}")
            if not part.leader:
                raise LookupError(f"cannot find partition leader {partition}")
            broker = self.metadata.brokers.get(part.leader)
            if broker is None:
                raise LookupError(f"cannot find broker {part.leader}")
            return part.leader, broker.address

    def commit_offset(self, topics: Iterable[FromTopic]) -> None:
        """Record committed offsets; stops at the first unknown topic or partition."""
        with self._lock:
            for entry in topics:
                self._partition(entry.topic, entry.partition).committed_offset = entry.offset

    def alter_partition(self, command: Command) -> None:
        self._reset_stable_timer()
        with self._lock:
            for change in command.changes:
                info = self.metadata.topics.get(change.topic)
                if info is None:
                    continue
                part = info.partitions.get(change.partition)
                if part is None:
                    continue
                part.isr = list(change.new_isr)

    # ------------------------------------------------------------------ stability

    def _reset_stable_timer(self) -> None:
        with self._lock:
            self._deadline = time.monotonic() + self._stable_delay
            self._stable = False

    def _run_stable_timer(self) -> None:
        while not self._shutdown_event.is_set():
            with self._lock:
                remaining = self._deadline - time.monotonic()
            if remaining > 0:
                self._shutdown_event.wait(remaining)
                continue
            with self._lock:
                self._deadline = time.monotonic() + self._stable_delay
                fire = not self._stable
                self._stable = True
            callback = self._on_stable
            if fire and callback is not None:
                callback()