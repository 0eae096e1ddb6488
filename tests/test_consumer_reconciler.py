import copy
import json
from datetime import datetime, timezone

import pytest

from jsoperator.conditions import (
    READY_CONDITION_TYPE,
    STATE_ERRORED,
    STATE_READY,
    STATE_RECONCILING,
    Condition,
    ConditionStatus,
)
from jsoperator.consumer_config import ConsumerConfig, ConsumerSpec, ReplayPolicy
from jsoperator.consumer_reconciler import (
    CONSUMER_FINALIZER,
    STATE_ANNOTATION_CONSUMER,
    ConsumerReconciler,
)
from jsoperator.controller import (
    JS_CONSUMER_NOT_FOUND_ERR,
    JS_STREAM_NOT_FOUND_ERR,
    InMemoryResourceStore,
    JetStreamController,
    NatsApiError,
    NotFoundError,
    Resource,
    Result,
)
from jsoperator.settings import ConnectionOpts, ControllerConfig, NatsConfig

MAIN_URL = "nats://main.example.com:4222"
ALT_URL = "nats://alt.example.com:4222"
STREAM = "orders"
CONSUMER = "test-consumer"
RESOURCE = "test-consumer"
ALT_NS = "alternate-namespace"
ALT_RESOURCE = "alternate-consumer"


class FakeJetStream:
    def __init__(self, streams=()):
        self.streams = {s: {} for s in streams}
        self.update_calls = 0

    def _stream(self, stream):
        if stream not in self.streams:
            raise NatsApiError(JS_STREAM_NOT_FOUND_ERR, "stream not found")
        return self.streams[stream]

    def load_consumer(self, stream, durable):
        consumers = self._stream(stream)
        if durable not in consumers:
            raise NatsApiError(JS_CONSUMER_NOT_FOUND_ERR, "consumer not found")
        return copy.deepcopy(consumers[durable])

    def create_consumer(self, stream, config):
        self._stream(stream)[config.durable] = copy.deepcopy(config)
        return copy.deepcopy(config)

    def update_consumer(self, stream, config):
        consumers = self._stream(stream)
        if config.durable not in consumers:
            raise NatsApiError(JS_CONSUMER_NOT_FOUND_ERR, "consumer not found")
        self.update_calls += 1
        consumers[config.durable] = copy.deepcopy(config)

    def delete_consumer(self, stream, durable):
        consumers = self._stream(stream)
        if durable not in consumers:
            raise NatsApiError(JS_CONSUMER_NOT_FOUND_ERR, "consumer not found")
        del consumers[durable]


@pytest.fixture
def servers():
    return {MAIN_URL: FakeJetStream([STREAM]), ALT_URL: FakeJetStream([STREAM])}


@pytest.fixture
def store():
    return InMemoryResourceStore()


def make_controller(store, servers, **config):
    def factory(nats_config):
        try:
            return servers[nats_config.server_url]
        except KeyError:
            raise ConnectionError("no servers available") from None

    return JetStreamController(
        store,
        factory,
        nats_config=NatsConfig(server_url=MAIN_URL),
        config=ControllerConfig(**config),
    )


def make_spec(**changes):
    spec = ConsumerSpec(
        ack_policy="explicit",
        deliver_policy="all",
        durable_name=CONSUMER,
        description="test consumer",
        stream_name=STREAM,
        replay_policy="instant",
        filter_subject="test.wildcard.>",
    )
    for key, value in changes.items():
        setattr(spec, key, value)
    return spec


def start_condition():
    return Condition(
        type=READY_CONDITION_TYPE,
        status=ConditionStatus.UNKNOWN,
        reason="Test",
        message="start condition",
        last_transition_time=datetime.now(timezone.utc).isoformat(),
    )


def add_initialized(store, spec=None, deleting=False):
    store.add(
        Resource(
            name=RESOURCE,
            namespace="default",
            spec=spec or make_spec(),
            finalizers=[CONSUMER_FINALIZER],
            conditions=[start_condition()],
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        )
    )


def reconciler(store, servers, **config):
    return ConsumerReconciler(make_controller(store, servers, **config))


def test_not_existing_resource(store, servers):
    result = reconciler(store, servers).reconcile("fake", "not-existing")
    assert result == Result()


def test_initializes_new_resource(store, servers):
    store.add(Resource(name=RESOURCE, spec=make_spec()))
    r = reconciler(store, servers)
    for _ in range(5):
        r.reconcile("default", RESOURCE)
        got = store.get("default", RESOURCE)
        if got.finalizers and got.conditions:
            break
    assert got.finalizers == [CONSUMER_FINALIZER]
    assert len(got.conditions) == 1
    cond = got.conditions[0]
    assert cond.status == ConditionStatus.UNKNOWN
    assert cond.reason == STATE_RECONCILING
    assert cond.message == "Starting reconciliation"


def test_first_reconcile_requeues(store, servers):
    store.add(Resource(name=RESOURCE, spec=make_spec()))
    result = reconciler(store, servers).reconcile("default", RESOURCE)
    assert result.requeue is True


def test_restricted_namespace_ignores_other_namespace(store, servers):
    store.add(
        Resource(
            name=ALT_RESOURCE,
            namespace=ALT_NS,
            spec=make_spec(durable_name=ALT_RESOURCE, filter_subject=""),
        )
    )
    r = reconciler(store, servers, namespace="default")
    assert r.reconcile(ALT_NS, ALT_RESOURCE) == Result()
    assert ALT_RESOURCE not in servers[MAIN_URL].streams[STREAM]
    assert store.get(ALT_NS, ALT_RESOURCE).conditions == []


def test_unrestricted_controller_reconciles_all_namespaces(store, servers):
    store.add(Resource(name=RESOURCE, spec=make_spec()))
    store.add(
        Resource(
            name=ALT_RESOURCE,
            namespace=ALT_NS,
            spec=make_spec(durable_name=ALT_RESOURCE, filter_subject=""),
        )
    )
    r = reconciler(store, servers)
    for ns, name in (("default", RESOURCE), (ALT_NS, ALT_RESOURCE)):
        assert r.reconcile(ns, name).requeue is True


def test_missing_stream_sets_errored(store, servers):
    add_initialized(store, make_spec(stream_name="not-existing"))
    with pytest.raises(RuntimeError):
        reconciler(store, servers).reconcile("default", RESOURCE)
    got = store.get("default", RESOURCE)
    assert len(got.conditions) == 1
    assert got.conditions[0].status == ConditionStatus.FALSE
    assert got.conditions[0].reason == STATE_ERRORED
    assert "stream" in got.conditions[0].message


def test_creates_new_consumer(store, servers):
    add_initialized(store)
    result = reconciler(store, servers).reconcile("default", RESOURCE)
    assert result.is_zero()
    got = store.get("default", RESOURCE)
    assert len(got.conditions) == 1
    assert got.conditions[0].status == ConditionStatus.TRUE
    assert got.conditions[0].reason == STATE_READY
    assert "created or updated" in got.conditions[0].message
    assert got.observed_generation == got.generation
    created = servers[MAIN_URL].load_consumer(STREAM, CONSUMER)
    assert created.durable == CONSUMER
    assert created.description == "test consumer"


def test_stores_state_annotation(store, servers):
    add_initialized(store)
    reconciler(store, servers).reconcile("default", RESOURCE)
    state = json.loads(store.get("default", RESOURCE).annotations[STATE_ANNOTATION_CONSUMER])
    assert state["durable"] == CONSUMER
    assert state["ack_policy"] == "explicit"
    assert state["filter_subject"] == "test.wildcard.>"


def test_converged_consumer_is_not_updated(store, servers):
    add_initialized(store)
    r = reconciler(store, servers)
    r.reconcile("default", RESOURCE)
    r.reconcile("default", RESOURCE)
    assert servers[MAIN_URL].update_calls == 0


def test_drifted_consumer_is_updated(store, servers):
    add_initialized(store)
    r = reconciler(store, servers)
    r.reconcile("default", RESOURCE)
    servers[MAIN_URL].streams[STREAM][CONSUMER].description = "changed"
    r.reconcile("default", RESOURCE)
    assert servers[MAIN_URL].update_calls == 1
    assert servers[MAIN_URL].load_consumer(STREAM, CONSUMER).description == "test consumer"


def test_updates_existing_consumer(store, servers):
    add_initialized(store)
    r = reconciler(store, servers)
    assert r.reconcile("default", RESOURCE).is_zero()
    resource = store.get("default", RESOURCE)
    previous = resource.conditions[0].last_transition_time
    resource.spec.description = "new description"
    store.update(resource)
    assert r.reconcile("default", RESOURCE).is_zero()
    got = store.get("default", RESOURCE)
    assert len(got.conditions) == 1
    assert got.conditions[0].last_transition_time == previous
    assert got.observed_generation == got.generation
    updated = servers[MAIN_URL].load_consumer(STREAM, CONSUMER)
    assert updated.description == "new description"
    assert updated.replay_policy == ReplayPolicy.INSTANT


def test_prevent_update_still_creates(store, servers):
    add_initialized(store, make_spec(prevent_update=True))
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    assert CONSUMER in servers[MAIN_URL].streams[STREAM]


def test_prevent_update_does_not_update(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store, make_spec(prevent_update=True))
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    assert servers[MAIN_URL].load_consumer(STREAM, CONSUMER).description == ""


def test_read_only_does_not_create(store, servers):
    add_initialized(store)
    assert reconciler(store, servers, read_only=True).reconcile("default", RESOURCE).is_zero()
    assert servers[MAIN_URL].streams[STREAM] == {}


def test_read_only_does_not_update(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store)
    assert reconciler(store, servers, read_only=True).reconcile("default", RESOURCE).is_zero()
    assert servers[MAIN_URL].load_consumer(STREAM, CONSUMER).description == ""


def test_namespace_restriction_does_not_create(store, servers):
    add_initialized(store)
    r = reconciler(store, servers, namespace=ALT_NS)
    assert r.reconcile("default", RESOURCE).is_zero()
    assert servers[MAIN_URL].streams[STREAM] == {}


def test_invalid_spec_sets_errored(store, servers):
    add_initialized(store, make_spec(ack_policy="bogus"))
    with pytest.raises(RuntimeError, match="ackPolicy"):
        reconciler(store, servers).reconcile("default", RESOURCE)
    cond = store.get("default", RESOURCE).conditions[0]
    assert cond.reason == STATE_ERRORED
    assert "ackPolicy" in cond.message


def test_unavailable_server_sets_errored(store, servers):
    add_initialized(store, make_spec(connection_opts=ConnectionOpts(servers=["nats://down.example.com:4222"])))
    with pytest.raises(RuntimeError):
        reconciler(store, servers).reconcile("default", RESOURCE)
    got = store.get("default", RESOURCE)
    assert len(got.conditions) == 1
    assert got.conditions[0].status == ConditionStatus.FALSE
    assert got.conditions[0].message.startswith("create or update consumer:")
    assert got.observed_generation == 0


def test_creates_on_server_from_spec(store, servers):
    add_initialized(store, make_spec(connection_opts=ConnectionOpts(servers=[ALT_URL])))
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    assert CONSUMER in servers[ALT_URL].streams[STREAM]
    assert servers[MAIN_URL].streams[STREAM] == {}


def test_delete_not_existing_consumer(store, servers):
    add_initialized(store, deleting=True)
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_delete_consumer_of_deleted_stream(store, servers):
    add_initialized(store, make_spec(stream_name="deleted-stream"), deleting=True)
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_deletes_existing_consumer(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store, deleting=True)
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    assert CONSUMER not in servers[MAIN_URL].streams[STREAM]
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_prevent_delete_keeps_consumer(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store, make_spec(prevent_delete=True), deleting=True)
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    assert CONSUMER in servers[MAIN_URL].streams[STREAM]
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_read_only_delete_keeps_consumer(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store, deleting=True)
    assert reconciler(store, servers, read_only=True).reconcile("default", RESOURCE).is_zero()
    assert CONSUMER in servers[MAIN_URL].streams[STREAM]
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_restricted_namespace_keeps_resource_and_consumer(store, servers):
    servers[MAIN_URL].create_consumer(STREAM, ConsumerConfig(durable=CONSUMER))
    add_initialized(store, deleting=True)
    r = reconciler(store, servers, namespace=ALT_NS)
    assert r.reconcile("default", RESOURCE).is_zero()
    assert CONSUMER in servers[MAIN_URL].streams[STREAM]
    assert CONSUMER_FINALIZER in store.get("default", RESOURCE).finalizers


def test_delete_without_state_and_unreachable_server_removes_finalizer(store, servers):
    spec = make_spec(connection_opts=ConnectionOpts(servers=["nats://down.example.com:4222"]))
    add_initialized(store, spec, deleting=True)
    assert reconciler(store, servers).reconcile("default", RESOURCE).is_zero()
    with pytest.raises(NotFoundError):
        store.get("default", RESOURCE)


def test_delete_with_state_and_unreachable_server_fails(store, servers):
    r = reconciler(store, servers)
    add_initialized(store)
    r.reconcile("default", RESOURCE)
    state = store.get("default", RESOURCE).annotations[STATE_ANNOTATION_CONSUMER]
    deleting = Resource(
        name="other",
        spec=make_spec(connection_opts=ConnectionOpts(servers=["nats://down.example.com:4222"])),
        annotations={STATE_ANNOTATION_CONSUMER: state},
        finalizers=[CONSUMER_FINALIZER],
        conditions=[start_condition()],
        deletion_timestamp=datetime.now(timezone.utc),
    )
    store.add(deleting)
    with pytest.raises(RuntimeError, match="delete consumer"):
        r.reconcile("default", "other")
    assert store.get("default", "other").finalizers == [CONSUMER_FINALIZER]