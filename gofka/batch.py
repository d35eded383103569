"""Record batch wire format used by log segments.

A batch on disk is laid out as::

    base offset     u64
    batch length    u32   (bytes that follow this field)
    leader epoch    u32
    magic           u8    (always 2)
    crc32           u32   (IEEE, over everything after this field)
    attributes      u16
    last offset δ   u32
    base timestamp  u64
    max timestamp   u64
    producer id     u64
    producer epoch  u16
    base sequence   u32
    record count    u32
    records ...

Each record is a u32 length followed by zigzag varints and raw bytes.
"""

from __future__ import annotations

import io
import struct
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import BinaryIO

from .message import Message
from .varint import decode_varint, encode_varint

MAGIC = 2

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_U16 = 0xFFFF
_U32 = 0xFFFFFFFF
_U64 = (1 << 64) - 1

_PREFIX = struct.Struct(">QI")
_LEADER = struct.Struct(">IBI")
_TAIL_PACK = struct.Struct(">HIQQQHII")
_TAIL_UNPACK = struct.Struct(">hiqqqhiI")
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class BatchFormatError(ValueError):
    """Raised when bytes do not hold a valid record batch or record."""


@dataclass
class RecordBatch:
    """A group of records written to the log together."""

    base_offset: int = 0
    batch_length: int = 0
    partition_leader_epoch: int = 0
    magic: int = MAGIC
    crc: int = 0
    attributes: int = 0
    last_offset_delta: int = 0
    base_timestamp: int = 0
    max_timestamp: int = 0
    producer_id: int = 0
    producer_epoch: int = 0
    base_sequence: int = 0
    records: list[Message] = field(default_factory=list)


def new_batch(next_offset: int, max_batch_size: int, message: Message) -> RecordBatch:
    """Start an empty batch at ``next_offset`` timed by ``message``.

    ``max_batch_size`` is the expected number of records; it is only a hint.
    """
    stamp = message.timestamp_ms()
    return RecordBatch(
        base_offset=next_offset,
        base_timestamp=stamp,
        max_timestamp=stamp,
        magic=MAGIC,
        records=[],
    )


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise BatchFormatError(f"unexpected end of data reading {what}")
    return data


def serialize_record(message: Message, base_timestamp: int, offset_delta: int) -> bytes:
    """Encode one record, length-prefixed, relative to its batch."""
    body = bytearray()
    body += encode_varint(message.timestamp_ms() - base_timestamp)
    body += encode_varint(offset_delta)

    for text in (message.key, message.value):
        if text == "":
            body += encode_varint(-1)
        else:
            raw = text.encode(_ENCODING, _ERRORS)
            body += encode_varint(len(raw))
            body += raw

    body += encode_varint(len(message.headers))
    for name, value in message.headers.items():
        raw_name = name.encode(_ENCODING, _ERRORS)
        body += encode_varint(len(raw_name))
        body += raw_name
        raw_value = value or b""
        body += encode_varint(len(raw_value))
        body += raw_value

    return struct.pack(">I", len(body)) + bytes(body)


class _RecordReader:
    """Cursor over the body of one record."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def varint(self, what: str) -> int:
        try:
            value, used = decode_varint(self._data[self._pos:])
        except ValueError as err:
            raise BatchFormatError(f"failed to read {what}: {err}") from err
        self._pos += used
        return value

    def take(self, size: int, what: str) -> bytes:
        if size < 0:
            raise BatchFormatError(f"negative length for {what}")
        if self._pos + size > len(self._data):
            raise BatchFormatError(f"message too short: {what} extends beyond message")
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def text(self, what: str) -> str:
        size = self.varint(f"{what} length")
        if size in (-1, 0):
            return ""
        return self.take(size, what).decode(_ENCODING, _ERRORS)


def deserialize_record(stream: BinaryIO, base_timestamp: int, base_offset: int) -> Message:
    """Read one length-prefixed record from ``stream``."""
    (length,) = struct.unpack(">I", _read_exact(stream, 4, "record length"))
    reader = _RecordReader(_read_exact(stream, length, "record"))

    timestamp_delta = reader.varint("msg timestamp")
    offset_delta = reader.varint("msg offset")
    try:
        timestamp = _EPOCH + timedelta(milliseconds=base_timestamp + timestamp_delta)
    except OverflowError as err:
        raise BatchFormatError("record timestamp out of range") from err

    message = Message(offset=base_offset + offset_delta, timestamp=timestamp)
    message.key = reader.text("key")
    message.value = reader.text("value")

    for _ in range(max(reader.varint("headers count"), 0)):
        name = reader.take(reader.varint("header key"), "header key")
        size = reader.varint("header value")
        value = None if size == -1 else reader.take(size, "header value")
        message.headers[name.decode(_ENCODING, _ERRORS)] = value
    return message


def serialize_batch(batch: RecordBatch) -> bytes:
    """Encode a batch with its length and CRC filled in."""
    body = bytearray(
        _TAIL_PACK.pack(
            batch.attributes & _U16,
            batch.last_offset_delta & _U32,
            batch.base_timestamp & _U64,
            batch.max_timestamp & _U64,
            batch.producer_id & _U64,
            batch.producer_epoch & _U16,
            batch.base_sequence & _U32,
            len(batch.records),
        )
    )
    for delta, message in enumerate(batch.records):
        body += serialize_record(message, batch.base_timestamp, delta)

    crc = zlib.crc32(body) & _U32
    payload = _LEADER.pack(batch.partition_leader_epoch & _U32, batch.magic & 0xFF, crc) + body
    return _PREFIX.pack(batch.base_offset & _U64, len(payload)) + payload


def deserialize_batch(stream: BinaryIO) -> tuple[RecordBatch, int]:
    """Read one batch from ``stream``.

    Returns the batch and the length of the data after the length field.
    Raises :class:`EOFError` when the stream is exhausted before a batch
    starts and :class:`BatchFormatError` for truncated or corrupt data.
    """
    head = stream.read(8)
    if not head:
        raise EOFError("no more batches")
    if len(head) != 8:
        raise BatchFormatError("unexpected end of data reading base offset")
    (base_offset,) = struct.unpack(">q", head)
    (length,) = struct.unpack(">i", _read_exact(stream, 4, "batch length"))
    if length < 0:
        raise BatchFormatError(f"negative batch length {length}")
    data = _read_exact(stream, length, "batch")

    if len(data) < 4:
        raise BatchFormatError("message too short: missing partition leader epoch")
    (leader_epoch,) = struct.unpack(">i", data[:4])
    if len(data) <= 4:
        raise BatchFormatError("message too short: missing magic byte")
    magic = data[4]
    if magic != MAGIC:
        raise BatchFormatError(f"wrong magic byte {magic}")
    if len(data) < 9:
        raise BatchFormatError("message too short: missing crc")
    (crc,) = struct.unpack(">I", data[5:9])
    if crc != zlib.crc32(data[9:]) & _U32:
        raise BatchFormatError("CRC mismatch")

    reader = io.BytesIO(data[9:])
    (
        attributes,
        last_offset_delta,
        base_timestamp,
        max_timestamp,
        producer_id,
        producer_epoch,
        base_sequence,
        record_count,
    ) = _TAIL_UNPACK.unpack(_read_exact(reader, _TAIL_UNPACK.size, "batch header"))

    records = []
    for _ in range(record_count):
        try:
            records.append(deserialize_record(reader, base_timestamp, base_offset))
        except BatchFormatError as err:
            raise BatchFormatError(f"cannot deserialize message: {err}") from err

    batch = RecordBatch(
        base_offset=base_offset,
        batch_length=len(records),
        partition_leader_epoch=leader_epoch,
        magic=magic,
        crc=struct.unpack(">i", data[5:9])[0],
        attributes=attributes,
        last_offset_delta=last_offset_delta,
        base_timestamp=base_timestamp,
        max_timestamp=max_timestamp,
        producer_id=producer_id,
        producer_epoch=producer_epoch,
        base_sequence=base_sequence,
        records=records,
    )
    return batch, length