"""Client configuration loaded from a YAML file with environment overrides.

Values are resolved in this order, highest first: environment variables,
the configuration file, built-in defaults. An environment variable is named
after the dotted key, upper-cased with dots replaced by underscores
(``producer.topic`` -> ``PRODUCER_TOPIC``). It only applies to keys that the
file or the defaults already know, and an empty value still counts as set.
Keys in the file are matched without regard to case.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, get_origin

import yaml

logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP_ADDRESS = "localhost:42169"
DEFAULT_ACKS = "1"

_DEFAULTS: dict[str, Any] = {
    "producer.bootstrap_address": DEFAULT_BOOTSTRAP_ADDRESS,
    "producer.acks": DEFAULT_ACKS,
    "consumer.bootstrap_address": DEFAULT_BOOTSTRAP_ADDRESS,
    "visualizer.enabled": False,
}

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class ConfigError(ValueError):
    """Raised when the configuration cannot be read or decoded."""


@dataclass
class VisualizerConfig:
    enabled: bool = False
    address: str = ""


@dataclass
class ProducerConfig:
    enabled: bool = False
    bootstrap_address: str = ""
    topic: str = ""
    auto_create_topics: bool = False
    acks: str = ""
    visualizer: VisualizerConfig = field(default_factory=VisualizerConfig)


@dataclass
class ConsumerConfig:
    enabled: bool = False
    group_id: str = ""
    bootstrap_address: str = ""
    topics: list[str] = field(default_factory=list)
    visualizer: VisualizerConfig = field(default_factory=VisualizerConfig)


@dataclass
class Config:
    producer: ProducerConfig = field(default_factory=ProducerConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)


def new_producer_config() -> ProducerConfig:
    """A producer configuration that is enabled and waits for one acknowledgement."""
    return ProducerConfig(enabled=True, acks=DEFAULT_ACKS, visualizer=VisualizerConfig(enabled=False))


def new_consumer_config() -> ConsumerConfig:
    """An enabled consumer configuration."""
    return ConsumerConfig(enabled=True, visualizer=VisualizerConfig(enabled=False))


# ---------------------------------------------------------------------- reading


def _flatten(tree: Mapping[Any, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for raw_key, value in tree.items():
        key = f"{prefix}{str(raw_key).lower()}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{key}."))
        else:
            flat[key] = value
    return flat


def _unflatten(flat: Mapping[str, Any]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for key in sorted(flat, key=lambda name: name.count(".")):
        *parents, leaf = key.split(".")
        node = tree
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        value = flat[key]
        if isinstance(node.get(leaf), dict) and value is None:
            continue
        node[leaf] = value
    return tree


def _read_file(config_path: "str | os.PathLike[str]") -> dict[str, Any]:
    try:
        with open(config_path, encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigError(f"failed to read config file: {err}") from err
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError("failed to read config file: top level is not a mapping")
    return _flatten(document)


def _env_name(key: str) -> str:
    return key.replace(".", "_").upper()


# ---------------------------------------------------------------------- decoding


def _to_bool(value: Any, key: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "":
            return False
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ConfigError(f"unable to decode into struct: cannot parse '{key}' as bool: {value!r}")
    raise ConfigError(f"unable to decode into struct: '{key}' expected a bool, got {type(value).__name__}")


def _to_str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"unable to decode into struct: '{key}' expected a string, got {type(value).__name__}")


def _to_str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",") if value else []
    if isinstance(value, (list, tuple)):
        return [_to_str(item, f"{key}[{number}]") for number, item in enumerate(value)]
    raise ConfigError(f"unable to decode into struct: '{key}' expected a list, got {type(value).__name__}")


def _convert(kind: Any, value: Any, key: str) -> Any:
    if isinstance(kind, type) and is_dataclass(kind):
        return _decode(kind, value, f"{key}.")
    if kind is bool:
        return _to_bool(value, key)
    if kind is str:
        return _to_str(value, key)
    if get_origin(kind) is list:
        return _to_str_list(value, key)
    raise ConfigError(f"unable to decode into struct: unsupported field '{key}'")


def _decode(cls: type, raw: Any, prefix: str = "") -> Any:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"unable to decode into struct: '{prefix.rstrip('.')}' expected a mapping")
    values = {
        item.name: _convert(item.type, raw[item.name], f"{prefix}{item.name}")
        for item in fields(cls)
        if item.name in raw
    }
    return cls(**values)


def load_config(config_path: "str | os.PathLike[str]") -> Config:
    """Read ``config_path`` as YAML, apply defaults and environment overrides."""
    logger.debug("node id from environment: %s", os.environ.get("SERVER_NODE_ID", ""))
    values = dict(_DEFAULTS)
    values.update(_read_file(config_path))
    for key in list(values):
        name = _env_name(key)
        if name in os.environ:
            values[key] = os.environ[name]
    config = _decode(Config, _unflatten(values))
    logger.debug("loaded configuration: %s", config)
    return config