# gofka

Building blocks for a Kafka-style message broker, in plain Python.

## Modules

- `gofka.varint`: zigzag varints (`zigzag_encode`, `zigzag_decode`, `encode_varint`,
  `decode_varint`). These encode the fields of a record.
- `gofka.message`: the `Message`, `ReadOptions` and `FromTopic` value types.
- `gofka.batch`: the binary record-batch format (magic byte 2, CRC-32 over the batch body).
  `serialize_batch` and `deserialize_batch` handle whole batches, and `serialize_record` and
  `deserialize_record` handle single records. Truncated or corrupt data raises
  `BatchFormatError`. `deserialize_batch` raises `EOFError` when the stream ends cleanly
  before a batch starts.
- `gofka.log_segment`: `LogSegment` is one on-disk segment made of a `.log` file, an
  `.index` file and a `.timeindex` file. `load_log_segment` reopens an existing segment and
  recovers its next offset.
- `gofka.log`: `Log` is a segmented log in one directory. It rolls over to a new segment
  once the active one reaches 2 MiB. A background thread applies size retention (100 MiB)
  and age retention (7 days) every 3 seconds.
- `gofka.partition`: `Partition` holds a log together with leader/follower state, the
  in-sync replica set and the high-water mark. Updating follower state on a partition that
  is not the leader raises `NotLeaderStateError`.
- `gofka.topic`: `Topic` is a named, fixed set of partitions stored under
  `root/<topic>/<id>`.
- `gofka.cluster`: `ClusterMetadata` tracks brokers, topics and partition leaders. It is
  kept up to date by applying `Command`s, either directly or through `decode_log`. When
  nothing has changed for `stable_delay` seconds, it calls a hook once.
- `gofka.config`: producer and consumer settings, loaded from YAML with overrides taken
  from environment variables.
- `gofka.command_processor`: `CommandProcessor` routes control commands to registered
  producer, consumer and broker clients. The commands are `create-topic`, `update-topic`,
  `fence`, `send-message`, `stop-send-message`, `add-topic`, `remove-topic`,
  `consume-message` and `stop-consume-message`.

## Install

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## Storing and reading messages

```python
import threading

from gofka.message import Message, ReadOptions
from gofka.topic import Topic

shutdown = threading.Event()
topic = Topic("orders", 3, shutdown, root="data")

partition = topic.get_partition(0)
partition.become_leader("broker-1", 1, ["broker-1"])

topic.append_batch(0, [Message(key="k", value="hello")])
partition.log.active.flush()

for message in topic.read_from_partition(0, 1, ReadOptions(max_bytes=1024 * 1024)):
    print(message.topic, message.partition, message.offset, message.value)

topic.shutdown()
shutdown.set()
```

Offsets in a fresh partition start at 1. Appended records are held in an in-memory batch
until it is written out. That happens when the batch reaches 100 records, 400 ms after its
first record, or when `LogSegment.flush()` is called. `LogSegment.close()` discards any
records still pending, so flush before shutting down if they must be kept.

In `Log.read_batch`, a `max_messages` of zero means 100 and a `min_bytes` of zero means
`max_bytes`. `Partition.read_from` returns nothing for offsets past the high-water mark.
`Partition.read_from_replica` ignores the high-water mark.

Errors:

- `Partition.append_batch` and `Topic.append_batch` raise `ValueError` for an empty batch.
- `Topic.get_partition` and `Topic.partition_info` raise `IndexError` for an unknown id.
- `Log.read_batch` raises `ValueError` when no segment holds the offset.

## Cluster metadata

```python
import threading

from gofka.cluster import BrokerInfo, ClusterMetadata, Command, CommandType, LeaderAssignment

shutdown = threading.Event()
cluster = ClusterMetadata(shutdown, stable_delay=4.0)
cluster.set_stable_func(lambda: print("cluster stable"))

cluster.register_broker(Command(CommandType.REGISTER_BROKER,
                                broker=BrokerInfo(id="b1", address="localhost:42169", alive=True)))
cluster.create_topic(Command(CommandType.CREATE_TOPIC, topic="orders",
                             n_partitions=2, replication_factor=1))
cluster.update_partition_leader(Command(CommandType.CHANGE_PARTITION_LEADER, assignments=[
    LeaderAssignment(topic_id="orders", partition_id=0, new_leader="b1", new_isr=["b1"])
]))

print(cluster.partition_leader("orders", 0))  # ('b1', 'localhost:42169')
shutdown.set()
```

These methods raise `LookupError` for unknown topics, partitions, leaders or brokers:
`partition_leader`, `partition_count`, `update_offset` and `commit_offset`.
`is_not_leader_error` checks an exception and its cause chain for a `NotLeaderError`.

## Configuration

`gofka.config.load_config(path)` reads a YAML file such as:

```yaml
producer:
  enabled: true
  bootstrap_address: localhost:42169
  topic: foo-topic
  acks: "all"
consumer:
  enabled: true
  group_id: foo-group
  topics: [foo-topic, bar-topic]
```

The defaults are:

- `producer.bootstrap_address` and `consumer.bootstrap_address` are `localhost:42169`.
- `producer.acks` is `"1"`.

Keys in the file are matched without regard to case. An environment variable overrides a
key that the file or the defaults already define. Its name is the key's path with dots
replaced by underscores, in upper case, e.g. `PRODUCER_TOPIC`. An empty value still counts
as set. A file that is missing, unreadable or not valid YAML raises `ConfigError`, and so
do values of the wrong type.

`new_producer_config()` and `new_consumer_config()` return enabled configurations built in
code. The producer one also sets `acks="1"`.

## Commands

`CommandProcessor` takes an optional `send_error(target, message)` callback. A client is
any object with the matching methods:

- `ProducerClient`: `get_client_id`, `create_topic`, `update_topic`, `produce`,
  `stop_producing`.
- `ConsumerClient`: `get_client_id`, `add_topic`, `remove_topic`, `consume`,
  `stop_consume`.
- `BrokerClient`: `get_client_id`, `fence`.

Register clients with `register_client` and pass a list of `Command`s to `process`.
Unknown actions are skipped. A missing target or a failing client call is reported through
`send_error`, or logged if no callback was given.

## What this package does not do

It has no network layer. There is no broker server, no producer or consumer client that
talks to a broker, no controller or consensus, and no connection to a visualizer. It
provides the storage, metadata, configuration and command-dispatch pieces such programs
would be built on. It installs no command-line programs.