"""A partition log made of rolling segments with size and age retention."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Iterable

from .log_segment import LogSegment, load_log_segment
from .message import Message, ReadOptions

logger = logging.getLogger(__name__)

DEFAULT_INDEX_INTERVAL = 8192
DEFAULT_SEGMENT_BYTES = 2 * 1024 * 1024
DEFAULT_RETENTION_BYTES = 100 * 1024 * 1024
DEFAULT_RETENTION_TIME = 7 * 24 * 3600.0
DEFAULT_MAX_MESSAGES = 100
CLEANUP_INTERVAL = 3.0


def _parse_base_offset(path: Path) -> int | None:
    try:
        return int(path.stem)
    except ValueError:
        return None


class Log:
    """An append-only log stored as a sequence of segments in one directory.

    The directory is ``root / path``. A background thread applies the age
    and size retention rules every few seconds until the shutdown event is
    set or :meth:`shutdown` is called.
    """

    cleanup_interval = CLEANUP_INTERVAL

    def __init__(
        self,
        path: str | os.PathLike[str],
        shutdown_event: threading.Event | None = None,
        root: str | os.PathLike[str] = "data",
    ) -> None:
        self.directory = Path(root) / path
        self.directory.mkdir(parents=True, exist_ok=True)

        self.index_interval = DEFAULT_INDEX_INTERVAL
        self.segment_bytes = DEFAULT_SEGMENT_BYTES
        self.retention_bytes = DEFAULT_RETENTION_BYTES
        self.retention_time = DEFAULT_RETENTION_TIME

        self._lock = threading.RLock()
        self._shutdown_lock = threading.Lock()
        self._closed = False
        self._shutdown_event = shutdown_event if shutdown_event is not None else threading.Event()
        self._segments: list[LogSegment] = []
        self.active: LogSegment | None = None

        self._load_segments()
        if not self._segments:
            self._new_segment(0)

        self._cleaner = threading.Thread(
            target=self._cleanup_loop, name=f"log-cleanup-{self.directory}", daemon=True
        )
        self._cleaner.start()

    def __enter__(self) -> Log:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    @property
    def segments(self) -> list[LogSegment]:
        """The segments currently making up the log, oldest first."""
        with self._lock:
            return list(self._segments)

    # ------------------------------------------------------------------ segments

    def _new_segment(self, base_offset: int) -> None:
        segment = LogSegment(self.directory, base_offset, self.index_interval)
        with self._lock:
            self._segments.append(segment)
            self.active = segment

    def _load_segments(self) -> None:
        offsets = sorted(
            {
                offset
                for offset in map(_parse_base_offset, self.directory.glob("*.log"))
                if offset is not None
            }
        )
        with self._lock:
            for offset in offsets:
                self._segments.append(load_log_segment(self.directory, offset, self.index_interval))
            if self._segments:
                self.active = self._segments[-1]

    def _roll(self) -> None:
        next_base = 0
        if self.active is not None:
            next_base = self.active.base_offset + self.active.count()
            try:
                self.active.close()
            except OSError as err:
                raise OSError(f"failed to close active segment: {err}") from err
        self._new_segment(next_base)

    def _find_segment(self, offset: int) -> LogSegment | None:
        with self._lock:
            for segment in reversed(self._segments):
                if offset >= segment.base_offset:
                    return segment
            return None

    def _next_segment(self, current: LogSegment) -> LogSegment | None:
        with self._lock:
            for position, segment in enumerate(self._segments):
                if segment is current and position + 1 < len(self._segments):
                    return self._segments[position + 1]
            return None

    # ------------------------------------------------------------------ data

    def append_batch(self, batch: Iterable[Message]) -> int:
        """Append messages to the active segment, rolling it when full.

        Returns the active segment's final offset minus one.
        """
        with self._lock:
            if self.active.size >= self.segment_bytes:
                self._roll()
            active = self.active
        active.append_batch(batch)
        return active.final_offset() - 1

    def read_batch(self, offset: int, options: ReadOptions | None = None) -> list[Message]:
        """Read stored messages from ``offset`` on, across segments.

        A zero ``max_messages`` means 100 and a zero ``min_bytes`` means
        ``max_bytes``. Raises :class:`ValueError` when no segment holds the
        offset.
        """
        options = options or ReadOptions()
        segment = self._find_segment(offset)
        if segment is None:
            raise ValueError(f"segment not found for offset: {offset}")

        max_messages = options.max_messages or DEFAULT_MAX_MESSAGES
        max_bytes = options.max_bytes
        min_bytes = options.min_bytes or max_bytes

        result: list[Message] = []
        total_bytes = 0
        current = offset
        while segment is not None and len(result) < max_messages and total_bytes < max_bytes:
            try:
                messages, next_offset, bytes_read = segment.read_batch(
                    current, max_messages - len(result), max_bytes - total_bytes
                )
            except EOFError:
                break

            result.extend(messages)
            total_bytes += bytes_read
            current = next_offset

            if current >= segment.next_offset:
                segment = self._next_segment(segment)
            if total_bytes >= min_bytes and result:
                break
        return result

    def size(self) -> int:
        """The next offset of the active segment."""
        return self.active.next_offset

    # ------------------------------------------------------------------ retention

    def _cleanup_loop(self) -> None:
        while not self._shutdown_event.wait(self.cleanup_interval):
            if self._closed:
                return
            self.remove_old()
            self.truncate()

    def truncate(self) -> None:
        """Remove the oldest segments while the log exceeds its size retention."""
        if self._closed:
            return
        with self._lock:
            total = sum(segment.size for segment in self._segments)
            if total <= self.retention_bytes:
                return
            to_remove = total - self.retention_bytes
            logger.info(
                "log size %d exceeded retention %d, removing %d bytes",
                total, self.retention_bytes, to_remove,
            )
            remaining = list(self._segments)
            while len(remaining) > 1 and to_remove > 0:
                oldest = remaining[0]
                logger.info(
                    "removing oldest segment with base offset %d and size %d",
                    oldest.base_offset, oldest.size,
                )
                try:
                    oldest.remove()
                except OSError as err:
                    logger.error("error removing segment %d: %s", oldest.base_offset, err)
                    break
                to_remove -= oldest.size
                remaining = remaining[1:]
            self._segments = remaining

    def remove_old(self) -> None:
        """Remove every segment not modified within the retention time."""
        if self._closed:
            return
        now = time.time()
        with self._lock:
            expired = [s for s in self._segments if now - s.last_modified > self.retention_time]
        if not expired:
            return

        removed: set[int] = set()
        for segment in expired:
            logger.info("removing expired segment with base offset %d", segment.base_offset)
            try:
                segment.remove()
            except OSError as err:
                logger.error("error removing segment %d: %s", segment.base_offset, err)
                continue
            removed.add(id(segment))
        if not removed:
            return
        with self._lock:
            self._segments = [s for s in self._segments if id(s) not in removed]

    def shutdown(self) -> None:
        """Close every segment; later calls do nothing.

        Re-raises the first error met while closing.
        """
        with self._shutdown_lock:
            if self._closed:
                return
            self._closed = True
        first_error: OSError | None = None
        for segment in self.segments:
            try:
                segment.close()
            except OSError as err:
                first_error = first_error or err
        if first_error is not None:
            raise first_error