"""A named topic made of a fixed number of partitions."""

from __future__ import annotations

import os
import threading
from typing import Iterable

from .message import Message, ReadOptions
from .partition import Partition


class Topic:
    """A topic whose partitions are stored under ``root/name/<id>``."""

    def __init__(
        self,
        name: str,
        n_partitions: int,
        shutdown_event: threading.Event | None = None,
        root: str | os.PathLike[str] = "data",
    ) -> None:
        if n_partitions <= 0:
            n_partitions = 1
        self.name = name
        self.n_partitions = n_partitions
        self._shutdown_event = shutdown_event if shutdown_event is not None else threading.Event()
        self._lock = threading.RLock()
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False
        self._partitions = [
            Partition(name, number, self._shutdown_event, root) for number in range(n_partitions)
        ]

    def __enter__(self) -> Topic:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    @property
    def partitions(self) -> list[Partition]:
        """The topic's partitions, ordered by id."""
        return list(self._partitions)

    def _in_range(self, partition_id: int) -> bool:
        return 0 <= partition_id < self.n_partitions

    def partition_info(self, partition_id: int) -> tuple[int, int]:
        """Return the high-water mark and log end offset of one partition."""
        with self._lock:
            if not self._in_range(partition_id):
                raise IndexError(
                    f"cannot find partition {partition_id}, "
                    f"bigger than available parts {len(self._partitions)}"
                )
            partition = self._partitions[partition_id]
            return partition.hwm, partition.leo

    def append_batch(self, partition: int, batch: Iterable[Message]) -> None:
        """Append messages to one partition; an empty batch is an error."""
        messages = list(batch)
        with self._lock:
            if not messages:
                raise ValueError("empty message")
            self.get_partition(partition).append_batch(messages)

    def _tag(self, partition_id: int, items: list[Message]) -> list[Message]:
        for item in items:
            item.topic = self.name
            item.partition = partition_id
        return items

    def read_from_partition(
        self, partition_id: int, offset: int, options: ReadOptions | None = None
    ) -> list[Message]:
        """Read committed messages; an unknown partition yields nothing."""
        with self._lock:
            if not self._in_range(partition_id):
                return []
            items = self._partitions[partition_id].read_from(offset, options)
            return self._tag(partition_id, items)

    def read_from_partition_replica(
        self, partition_id: int, offset: int, options: ReadOptions | None = None
    ) -> list[Message]:
        """Read messages past the high-water mark, as a replica does."""
        with self._lock:
            if not self._in_range(partition_id):
                return []
            items = self._partitions[partition_id].read_from_replica(offset, options)
            return self._tag(partition_id, items)

    def update_follower_state(
        self, follower_id: str, partition_id: int, fetch_offset: int, leo: int
    ) -> None:
        """Pass a follower's progress to the partition; unknown ids are ignored."""
        with self._lock:
            if not self._in_range(partition_id):
                return
            self._partitions[partition_id].update_followers_state(follower_id, fetch_offset, leo)

    def get_partition(self, index: int) -> Partition:
        """Return a partition by id; raises :class:`IndexError` when missing."""
        if not 0 <= index < len(self._partitions):
            raise IndexError("cannot find partition")
        return self._partitions[index]

    def get_leo(self, partition: int) -> int:
        """Log end offset of one partition."""
        return self.get_partition(partition).leo

    def shutdown(self) -> None:
        """Shut down every partition once; re-raises the first error met."""
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        first_error: Exception | None = None
        for partition in self._partitions:
            try:
                partition.shutdown()
            except OSError as err:
                first_error = first_error or err
        if first_error is not None:
            raise first_error