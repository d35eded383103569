"""A topic partition: its log plus the replication state kept by a leader."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .log import Log
from .message import Message, ReadOptions

logger = logging.getLogger(__name__)


class NotLeaderStateError(RuntimeError):
    """Raised when leader-only replication state is touched on a follower."""


@dataclass
class FollowerState:
    """What the leader knows about one follower's progress."""

    last_fetch: float = field(default_factory=time.monotonic)
    fetch_offset: int = 0
    log_end_offset: int = 0
    in_sync: bool = False


class Partition:
    """One numbered partition of a topic, stored under ``root/topic/id``."""

    def __init__(
        self,
        topic_name: str,
        partition_id: int,
        shutdown_event: threading.Event | None = None,
        root: str | os.PathLike[str] = "data",
    ) -> None:
        self.id = partition_id
        self.directory = Path(topic_name) / str(partition_id)
        self.log = Log(self.directory, shutdown_event, root)

        self.leader_id = ""
        self.replicas: list[str] = []
        self.leader_epoch = 0
        self.follower_states: dict[str, FollowerState] = {}
        self._leader = False
        self._isr: list[str] = []
        self._hwm = 0
        self._leo = self.log.size()

        self._lock = threading.RLock()
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False

    @property
    def is_leader(self) -> bool:
        return self._leader

    @property
    def leo(self) -> int:
        """Log end offset."""
        return self._leo

    @property
    def hwm(self) -> int:
        """High-water mark: the last offset visible to consumers."""
        return self._hwm

    @property
    def isr(self) -> list[str]:
        """In-sync replicas, leader first."""
        return list(self._isr)

    def append_batch(self, batch: Iterable[Message]) -> int:
        """Append messages; raises :class:`ValueError` for an empty batch."""
        messages = list(batch)
        if not messages:
            raise ValueError("empty message")
        with self._lock:
            next_offset = self.log.append_batch(messages)
            self._leo = next_offset + 1
            if len(self.replicas) <= 1:
                self._hwm = self._leo
            return next_offset

    def read_from(self, offset: int, options: ReadOptions | None = None) -> list[Message]:
        """Read committed messages; nothing is returned past the high-water mark."""
        with self._lock:
            if offset > self._hwm:
                return []
            return self.log.read_batch(offset, options)

    def read_from_replica(self, offset: int, options: ReadOptions | None = None) -> list[Message]:
        """Read messages regardless of the high-water mark."""
        with self._lock:
            return self.log.read_batch(offset, options)

    def update_followers_state(self, follower_id: str, fetch_offset: int, log_end_offset: int) -> None:
        """Record a follower's fetch, then recompute the ISR and high-water mark."""
        with self._lock:
            if not self._leader:
                raise NotLeaderStateError("Not leader, cant update state")
            state = self.follower_states.setdefault(follower_id, FollowerState())
            state.last_fetch = time.monotonic()
            state.fetch_offset = fetch_offset
            state.log_end_offset = log_end_offset
            self._update_isr()
            self._update_hwm()

    def _update_isr(self) -> None:
        if not self._leader:
            raise NotLeaderStateError("Not leader, cant update ISR")
        isr = [self.leader_id]
        for follower_id, state in self.follower_states.items():
            if follower_id == self.leader_id:
                continue
            state.in_sync = self._leo - state.log_end_offset <= 1
            if state.in_sync:
                isr.append(follower_id)
            else:
                logger.info(
                    "%s - %s out of sync: %d %d",
                    self.leader_id, follower_id, state.log_end_offset, self._leo,
                )
        self._isr = isr

    def _update_hwm(self) -> None:
        if not self._leader:
            raise NotLeaderStateError("Not leader, cant update HWM")
        if not self._isr:
            raise ValueError("empty isr list")
        lowest = self._leo
        for replica_id in self._isr:
            if replica_id == self.leader_id:
                continue
            state = self.follower_states.get(replica_id)
            if state is not None and state.log_end_offset < lowest:
                lowest = state.log_end_offset
        if lowest != self._hwm:
            logger.debug("new high-water mark %d", lowest)
        self._hwm = lowest

    def become_leader(self, broker_id: str, epoch: int, replicas: Iterable[str]) -> None:
        """Take over leadership with ``broker_id`` as the only in-sync replica."""
        with self._lock:
            self._leader = True
            self.leader_epoch = epoch
            self._leo = self.log.size()
            self._hwm = self._leo
            self.replicas = list(replicas)
            self.follower_states = {replica: FollowerState() for replica in self.replicas}
            self.leader_id = broker_id
            self._isr = [broker_id]

    def become_follower(self, broker_id: str, epoch: int, replicas: Iterable[str]) -> None:
        """Follow ``broker_id``, dropping any leader-side state."""
        with self._lock:
            self._leader = False
            self.leader_id = broker_id
            self.leader_epoch = epoch
            self._leo = self.log.size()
            self.follower_states = {}
            self._isr = []
            self.replicas = list(replicas)

    def lagging_replicas(self, timeout: float) -> tuple[bool, list[str]]:
        """Whether an out-of-sync replica has not fetched within ``timeout`` seconds.

        Returns that flag and the current ISR; a follower reports ``(False, [])``.
        """
        with self._lock:
            if not self._leader:
                return False, []
            now = time.monotonic()
            lagging = False
            for replica in self.replicas:
                if replica in self._isr:
                    continue
                state = self.follower_states.get(replica)
                if state is not None and not state.in_sync and now - state.last_fetch > timeout:
                    lagging = True
            return lagging, list(self._isr)

    def shutdown(self) -> None:
        """Shut down the log; later calls do nothing."""
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        self.log.shutdown()