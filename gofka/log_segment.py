"""One segment of a partition log: a data file plus offset and time indexes.

Records are gathered into an in-memory batch and written out when the batch
is full, when its timeout expires, or when :meth:`LogSegment.flush` is
called. Whenever a write crosses a page boundary an entry is added to the
offset index (offset -> file position) and to the time index
(timestamp -> offset); both use 16-byte big-endian entries.
"""

from __future__ import annotations

import logging
import os
import struct
import threading
import time
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable

from .batch import BatchFormatError, RecordBatch, deserialize_batch, new_batch, serialize_batch
from .message import Message

logger = logging.getLogger(__name__)

INDEX_ENTRY = struct.Struct(">qq")
DEFAULT_BATCH_TIMEOUT = 0.4
DEFAULT_MAX_BATCH_SIZE = 100


class LogSegment:
    """A log file with its offset index and time index."""

    def __init__(self, directory: str | os.PathLike[str], base_offset: int, page_interval: int) -> None:
        self.directory = Path(directory)
        self.base_offset = base_offset
        self.next_offset = base_offset + 1
        self.page_interval = page_interval
        self.batch_timeout = DEFAULT_BATCH_TIMEOUT
        self.max_batch_size = DEFAULT_MAX_BATCH_SIZE

        stem = f"{base_offset:020d}"
        self.log_path = self.directory / f"{stem}.log"
        self.index_path = self.directory / f"{stem}.index"
        self.time_index_path = self.directory / f"{stem}.timeindex"

        with ExitStack() as stack:
            self._log: BinaryIO = stack.enter_context(open(self.log_path, "a+b"))
            self._index: BinaryIO = stack.enter_context(open(self.index_path, "a+b"))
            self._time_index: BinaryIO = stack.enter_context(open(self.time_index_path, "a+b"))
            self.size = os.fstat(self._log.fileno()).st_size
            stack.pop_all()

        self.last_modified = time.time()
        self._current: RecordBatch | None = None
        self._timer: threading.Timer | None = None
        self._closed = False
        self._lock = threading.RLock()

    def __enter__(self) -> LogSegment:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"LogSegment(base_offset={self.base_offset}, next_offset={self.next_offset}, "
            f"size={self.size})"
        )

    def count(self) -> int:
        """Number of offsets handed out by this segment."""
        return self.next_offset - self.base_offset - 1

    def final_offset(self) -> int:
        """The last offset handed out."""
        return self.next_offset - 1

    # ------------------------------------------------------------------ writing

    def append_batch(self, batch: Iterable[Message]) -> None:
        """Add messages to the pending batch, assigning them offsets."""
        messages = list(batch)
        if not messages:
            return
        for message in messages:
            self._append(message)
        self.last_modified = time.time()

    def _append(self, message: Message) -> None:
        with self._lock:
            if message.timestamp is None:
                message.timestamp = datetime.now(timezone.utc)
            if self._current is None:
                self._current = new_batch(self.next_offset, self.max_batch_size, message)

            message.offset = self.next_offset
            self._current.records.append(message)
            self._current.max_timestamp = max(self._current.max_timestamp, message.timestamp_ms())
            self.next_offset += 1

            if len(self._current.records) == 1:
                self._start_timer()
            if len(self._current.records) >= self.max_batch_size:
                self._flush_current()

    def flush(self) -> None:
        """Write the pending batch, if any, to the log file."""
        with self._lock:
            self._flush_current()

    def _start_timer(self) -> None:
        if self._timer is not None:
            return
        timer = threading.Timer(self.batch_timeout, self._on_timeout)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        with self._lock:
            if self._closed or self._timer is not threading.current_thread():
                return
            self._timer = None
            try:
                self._flush_current()
            except (OSError, BatchFormatError) as err:
                logger.error("error flushing batch: %s", err)

    def _flush_current(self) -> None:
        batch = self._current
        if batch is None or not batch.records:
            return
        batch.last_offset_delta = len(batch.records) - 1
        self._stop_timer()

        data = serialize_batch(batch)
        position = self.size
        self._log.write(data)
        self._log.flush()
        new_size = position + len(data)

        if position // self.page_interval != new_size // self.page_interval:
            logger.debug("flushing batch across page: %d -> %d", position, new_size)
            self._write_entry(self._index, batch.base_offset, position)
            self._write_entry(self._time_index, batch.base_timestamp, batch.base_offset)

        self.size = new_size
        self._current = None

    @staticmethod
    def _write_entry(handle: BinaryIO, first: int, second: int) -> None:
        handle.write(INDEX_ENTRY.pack(first, second))
        handle.flush()

    # ------------------------------------------------------------------ reading

    def read_batch(self, offset: int, max_messages: int, max_bytes: int) -> tuple[list[Message], int, int]:
        """Read stored messages starting at ``offset``.

        Returns the messages, the offset after the last one returned and the
        number of batch bytes read. Raises :class:`ValueError` when the offset
        lies outside the segment, :class:`EOFError` when the file ends before
        the requested offsets were written, and :class:`BatchFormatError` for
        corrupt data.
        """
        with self._lock:
            if not self.base_offset <= offset < self.next_offset:
                raise ValueError(
                    f"offset {offset} not found in segment range "
                    f"[{self.base_offset},{self.next_offset})"
                )
            self._log.seek(self.find_position(offset))

            messages: list[Message] = []
            bytes_read = 0
            current = offset
            while len(messages) < max_messages and bytes_read < max_bytes and current < self.next_offset:
                batch, length = deserialize_batch(self._log)
                for record in batch.records:
                    if record.offset >= offset:
                        messages.append(record)
                        current = record.offset + 1
                        if len(messages) >= max_messages:
                            break
                bytes_read += length
                if bytes_read >= max_bytes:
                    break
            return messages, current, bytes_read

    def _index_entries(self) -> int:
        return os.fstat(self._index.fileno()).st_size // INDEX_ENTRY.size

    def _index_entry(self, number: int) -> tuple[int, int]:
        self._index.seek(number * INDEX_ENTRY.size)
        data = self._index.read(INDEX_ENTRY.size)
        if len(data) != INDEX_ENTRY.size:
            raise OSError(f"failed to read index entry at position {number * INDEX_ENTRY.size}")
        return INDEX_ENTRY.unpack(data)

    def find_position(self, offset: int) -> int:
        """File position of the indexed batch at or before ``offset`` (0 if none)."""
        with self._lock:
            low, high = 0, self._index_entries() - 1
            found = 0
            while low <= high:
                middle = (low + high) // 2
                indexed, position = self._index_entry(middle)
                if indexed == offset:
                    return position
                if indexed < offset:
                    found = position
                    low = middle + 1
                else:
                    high = middle - 1
            return found

    def find_highest_offset(self) -> int:
        """Scan the whole log file for the highest stored offset."""
        with self._lock:
            if self.size == 0:
                return self.base_offset - 1
            return self._scan_from(0, self.base_offset - 1)

    def _highest_offset_from_index(self) -> int:
        with self._lock:
            if os.fstat(self._index.fileno()).st_size == 0:
                return self.find_highest_offset()
            entries = self._index_entries()
            if entries == 0:
                return self.base_offset - 1
            indexed, position = self._index_entry(entries - 1)
            return self._scan_from(position, indexed)

    def _scan_from(self, position: int, minimum: int) -> int:
        self._log.seek(position)
        highest = minimum
        while True:
            try:
                batch, _ = deserialize_batch(self._log)
            except EOFError:
                return highest
            except BatchFormatError as err:
                raise BatchFormatError(f"error reading message during scan: {err}") from err
            highest = max(highest, batch.base_offset + batch.last_offset_delta)

    # ------------------------------------------------------------------ lifetime

    def close(self) -> None:
        """Stop the batch timer and close the files; pending records are dropped."""
        with self._lock:
            self._stop_timer()
            self._closed = True
            first_error: OSError | None = None
            for handle in (self._log, self._index, self._time_index):
                try:
                    handle.close()
                except OSError as err:
                    first_error = first_error or err
            if first_error is not None:
                raise first_error

    def remove(self) -> None:
        """Close the segment and delete its files."""
        with self._lock:
            try:
                self.close()
            except OSError as err:
                logger.warning("failed to close segment before removing: %s", err)
            errors = []
            for path in (self.log_path, self.index_path, self.time_index_path):
                try:
                    path.unlink(missing_ok=True)
                except OSError as err:
                    errors.append(err)
            if errors:
                raise OSError(f"failed to remove segment files: {errors}")


def load_log_segment(directory: str | os.PathLike[str], base_offset: int, page_interval: int) -> LogSegment:
    """Open an existing segment and recover its next offset from disk."""
    segment = LogSegment(directory, base_offset, page_interval)
    segment.next_offset = 1
    if segment.size > 0:
        try:
            highest = segment._highest_offset_from_index()
        except (OSError, BatchFormatError) as err:
            logger.warning("failed to find highest offset, using full scan: %s", err)
            try:
                highest = segment.find_highest_offset()
            except (OSError, BatchFormatError) as scan_err:
                segment.close()
                raise BatchFormatError(f"failed to determine highest offset: {scan_err}") from scan_err
        segment.next_offset = highest + 1
    return segment