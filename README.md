# jsoperator

Reconciliation logic for JetStream consumers, key-value buckets and object
stores that are declared as namespaced resources.

Each declared resource is driven towards its desired state one step per call:
the ready condition is set to `Unknown`, a finalizer is added, the server-side
object is created or updated, and when the resource is marked for deletion the
server-side object is removed (unless `prevent_delete` is set or the
controller is read-only) before the finalizer is dropped. After a successful
create or update, the configuration the server reports is stored in an
annotation of the resource, so later calls skip the update while nothing has
drifted and the generation is unchanged.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

The package has no dependencies outside the standard library.

## Modules

- `jsoperator.durations` – `parse_duration` turns strings such as `"1h30m"`,
  `"10ns"` or `"-1.5s"` into an integer number of nanoseconds;
  `parse_rfc3339` turns an RFC 3339 timestamp into a timezone-aware
  `datetime` (fractions truncated to microseconds). Both raise `ValueError`
  on bad input.
- `jsoperator.conditions` – `Condition`, `ConditionStatus` (`TRUE`, `FALSE`,
  `UNKNOWN`), `upsert_condition` and `update_ready_condition`. The latter
  returns a new list with the `Ready` condition added or replaced; its
  transition time is reset to now only when there was none before or the
  status changed.
- `jsoperator.settings` – `TLS`, `ConnectionOpts`, `NatsConfig`,
  `ControllerConfig` and `nats_config_from_opts`. `NatsConfig.overlay` copies
  every non-empty setting of another config onto this one.
  `nats_config_from_opts` fills in only what the options give; a false
  `tls_first` never overrides a true one.
- `jsoperator.consumer_config` – `ConsumerSpec`, `ConsumerConfig`, the enums
  `AckPolicy`, `DeliverPolicy`, `ReplayPolicy`, and `consumer_spec_to_config`.
  Durations in the config are nanoseconds.
- `jsoperator.store_config` – `KeyValueSpec`, `ObjectStoreSpec`,
  `KeyValueConfig`, `ObjectStoreConfig`, `StorageType`, `Placement`,
  `RePublish`, `SubjectTransform`, `StreamSource`, `StreamSourceConfig`,
  `ExternalStream`, and the mapping functions `key_value_spec_to_config`,
  `object_store_spec_to_config` and `map_stream_source`.
- `jsoperator.controller` – `JetStreamController` (read-only mode, namespace
  restriction, requeue interval staggered by up to ten percent, layered
  connection settings, `with_client`), `Result` with `is_zero`, `Resource`,
  `InMemoryResourceStore`, `NatsApiError`, `NotFoundError`,
  `compare_config_state` and `version_components`.
- `jsoperator.consumer_reconciler` – `ConsumerReconciler`.
- `jsoperator.store_reconcilers` – `KeyValueReconciler` and
  `ObjectStoreReconciler`.

## Mapping a spec

```python
from jsoperator.consumer_config import ConsumerSpec, consumer_spec_to_config

spec = ConsumerSpec(
    durable_name="orders-worker",
    ack_policy="explicit",
    ack_wait="30s",
    deliver_policy="all",
    filter_subject="orders.>",
)
config = consumer_spec_to_config(spec)
print(config.ack_wait)  # 30000000000
```

An invalid policy name, a malformed duration, a missing `opt_start_time` for
`"byStartTime"`, or setting both `filter_subject` and `filter_subjects`
raises `ValueError` with a message naming the offending field.

## Reconciling

A reconciler works against an `InMemoryResourceStore` and a client made by
the `client_factory` given to `JetStreamController`. The factory receives the
layered `NatsConfig`; a client with a `close` method is closed after each use.
Missing streams, buckets and consumers must be reported as `NatsApiError`
with `JS_STREAM_NOT_FOUND_ERR` or `JS_CONSUMER_NOT_FOUND_ERR`.

- `ConsumerReconciler` needs `load_consumer(stream, durable)`,
  `create_consumer(stream, config)`, `update_consumer(stream, config)` and
  `delete_consumer(stream, durable)`; loading and creating return a
  `ConsumerConfig`.
- `KeyValueReconciler` needs `stream_config(name)` (a JSON-compatible
  mapping for the stream `KV_<bucket>`), `create_key_value(config)`,
  `update_key_value(config)` and `delete_key_value(bucket)`.
- `ObjectStoreReconciler` needs `stream_config(name)` (for `OBJ_<bucket>`),
  `create_object_store(config)`, `update_object_store(config)` and
  `delete_object_store(bucket)`.

```python
from jsoperator.controller import (
    JS_STREAM_NOT_FOUND_ERR, InMemoryResourceStore, JetStreamController,
    NatsApiError, Resource,
)
from jsoperator.store_config import KeyValueSpec
from jsoperator.store_reconcilers import KeyValueReconciler


class Client:
    def __init__(self):
        self.streams = {}

    def stream_config(self, name):
        try:
            return self.streams[name]
        except KeyError:
            raise NatsApiError(JS_STREAM_NOT_FOUND_ERR) from None

    def create_key_value(self, config):
        self.streams["KV_" + config.bucket] = {"history": config.history}

    def update_key_value(self, config):
        self.create_key_value(config)

    def delete_key_value(self, bucket):
        del self.streams["KV_" + bucket]


client = Client()
store = InMemoryResourceStore()
store.add(Resource(name="orders", spec=KeyValueSpec(bucket="orders", history=5)))
reconciler = KeyValueReconciler(JetStreamController(store, lambda cfg: client))

reconciler.reconcile("default", "orders")  # sets the Unknown ready condition, asks to requeue
reconciler.reconcile("default", "orders")  # adds the finalizer
reconciler.reconcile("default", "orders")  # creates the bucket, Ready becomes True
print(client.streams)  # {'KV_orders': {'history': 5}}
```

`reconcile(namespace, name)` returns a `Result`; `is_zero()` is true when no
further reconciliation was asked for. On success the result asks to run again
after the controller's requeue interval (`ControllerConfig.requeue_interval`,
zero by default). Failures raise `RuntimeError` after the ready condition has
been set to `False` with reason `Errored`.

## What the package does not do

- It contains no NATS client: every server operation goes through the client
  the factory returns.
- It does not talk to a cluster API or watch for changes; resources live in
  `InMemoryResourceStore` and reconciliation runs only when `reconcile` is
  called.
- Account settings are not read from secrets or written to files: a
  resource's `account` is resolved only through the `account_resolver`
  callable given to `JetStreamController`.
- There is no command-line program and no reconciler for streams or accounts.