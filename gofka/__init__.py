"""Kafka-style storage primitives: record batches, segmented logs, partitions, topics, cluster metadata, client configuration and command dispatch."""

__version__ = "0.1.0"