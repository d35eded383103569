"""Dispatch of commands sent by the visualizer to local clients."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class Command:
    """One instruction for the client registered as ``target``."""

    action: str
    target: str = ""
    data: bytes | None = None


@dataclass
class CreateTopicCommand:
    topic: str = ""
    n_parts: int = 0
    replication: int = 0

    @classmethod
    def from_json(cls, data: bytes | str) -> CreateTopicCommand:
        """Decode the JSON payload of a ``create-topic`` command.

        Keys match field names without regard to case. Raises
        :class:`ValueError` for malformed JSON or wrongly typed fields.
        """
        document = json.loads(data)
        if document is None:
            return cls()
        if not isinstance(document, dict):
            raise ValueError("create-topic payload must be a JSON object")
        names = {item.name: item.name for item in fields(cls)}
        exact = {key: value for key, value in document.items() if key in names}
        loose = {
            key.lower(): value
            for key, value in document.items()
            if key not in names and key.lower() in names
        }
        values = {**loose, **exact}
        command = cls()
        for name, value in values.items():
            if value is None:
                continue
            expected = str if name == "topic" else int
            if isinstance(value, bool) or not isinstance(value, expected):
                raise ValueError(f"cannot unmarshal {value!r} into field {name}")
            setattr(command, name, value)
        return command


@runtime_checkable
class Client(Protocol):
    def get_client_id(self) -> str: ...


@runtime_checkable
class ProducerClient(Client, Protocol):
    def create_topic(self, topic: str, n_partitions: int, replication: int) -> None: ...
    def update_topic(self, topic: str) -> None: ...
    def produce(self) -> None: ...
    def stop_producing(self) -> None: ...


@runtime_checkable
class ConsumerClient(Client, Protocol):
    def remove_topic(self, topic: str) -> None: ...
    def consume(self) -> None: ...
    def stop_consume(self) -> None: ...
    def add_topic(self, topic: str) -> None: ...


@runtime_checkable
class BrokerClient(Client, Protocol):
    def fence(self) -> None: ...


def _text(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", "replace")


class CommandProcessor:
    """Holds the local clients and runs commands against them.

    Failures are reported through ``send_error(target, message)``.
    """

    def __init__(self, send_error: Callable[[str, str], Any] | None = None) -> None:
        self.send_error = send_error
        self._clients: dict[str, Client] = {}
        self._handlers: dict[str, Callable[[bytes | None, str], None]] = {
            "create-topic": self._create_topic,
            "update-topic": self._update_topic,
            "fence": lambda data, target: self._fence(target),
            "send-message": self._send_message,
            "stop-send-message": lambda data, target: self._stop_send_message(target),
            "add-topic": self._add_topic,
            "remove-topic": self._remove_topic,
            "consume-message": lambda data, target: self._consume_message(target),
            "stop-consume-message": lambda data, target: self._stop_consume_message(target),
        }

    @property
    def clients(self) -> dict[str, Client]:
        """Registered clients by id."""
        return dict(self._clients)

    def register_client(self, client_id: str, client: Client) -> None:
        self._clients[client_id] = client

    def _lookup(self, client_id: str, kind: type) -> Any:
        client = self._clients.get(client_id)
        if client is None:
            logger.debug("no client found: %s", client_id)
            return None
        if not isinstance(client, kind):
            logger.debug("client %s is not a %s", client_id, kind.__name__)
            return None
        return client

    def get_producer_client(self, client_id: str) -> ProducerClient | None:
        return self._lookup(client_id, ProducerClient)

    def get_consumer_client(self, client_id: str) -> ConsumerClient | None:
        return self._lookup(client_id, ConsumerClient)

    def get_broker_client(self, client_id: str) -> BrokerClient | None:
        return self._lookup(client_id, BrokerClient)

    def process(self, commands: list[Command]) -> None:
        """Run each command in order; unknown actions are skipped."""
        for command in commands:
            handler = self._handlers.get(command.action)
            if handler is None:
                logger.warning("cannot process: %s", command.action)
                continue
            handler(command.data, command.target)

    def _report(self, target: str, message: str) -> None:
        if self.send_error is not None:
            self.send_error(target, message)
        else:
            logger.error("%s: %s", target, message)

    def _create_topic(self, data: bytes | None, target: str) -> None:
        create = CreateTopicCommand.from_json(data or b"")
        client = self.get_producer_client(target)
        if client is None:
            self._report(target, f"cannot find producer: {target}")
            return
        try:
            client.create_topic(create.topic, create.n_parts, create.replication)
        except Exception as err:
            self._report(target, str(err))

    def _update_topic(self, data: bytes | None, target: str) -> None:
        client = self.get_producer_client(target)
        if client is None:
            self._report(target, f"cannot find producer: {target}")
            return
        client.update_topic(_text(data))

    def _add_topic(self, data: bytes | None, target: str) -> None:
        client = self.get_consumer_client(target)
        if client is None:
            self._report(target, f"cannot find consumer: {target}")
            return
        try:
            client.add_topic(_text(data))
        except Exception as err:
            self._report(target, str(err))

    def _remove_topic(self, data: bytes | None, target: str) -> None:
        client = self.get_consumer_client(target)
        if client is None:
            self._report(target, f"cannot find consumer: {target}")
            return
        try:
            client.remove_topic(_text(data))
        except Exception as err:
            self._report(target, str(err))

    def _fence(self, target: str) -> None:
        client = self.get_broker_client(target)
        if client is None:
            self._report(target, f"cannot find producer: {target}")
            return
        try:
            client.fence()
        except Exception as err:
            self._report(target, str(err))

    def _send_message(self, data: bytes | None, target: str) -> None:
        client = self.get_producer_client(target)
        if client is None:
            return
        try:
            client.produce()
        except Exception as err:
            logger.error("error sending message from command: %s", err)

    def _stop_send_message(self, target: str) -> None:
        client = self.get_producer_client(target)
        if client is None:
            return
        client.stop_producing()

    def _consume_message(self, target: str) -> None:
        client = self.get_consumer_client(target)
        if client is None:
            self._report(target, f"cannot find consumer: {target}")
            return
        try:
            client.consume()
        except Exception as err:
            self._report(target, str(err))

    def _stop_consume_message(self, target: str) -> None:
        client = self.get_consumer_client(target)
        if client is None:
            self._report(target, f"cannot find consumer: {target}")
            return
        client.stop_consume()