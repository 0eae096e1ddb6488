"""Reconciliation of consumer resources with the consumers on a NATS server."""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime
from typing import Any, Optional

from jsoperator.conditions import (
    STATE_ERRORED,
    STATE_FINALIZING,
    STATE_READY,
    STATE_RECONCILING,
    ConditionStatus,
    update_ready_condition,
)
from jsoperator.consumer_config import (
    AckPolicy,
    ConsumerConfig,
    DeliverPolicy,
    ReplayPolicy,
    consumer_spec_to_config,
)
from jsoperator.controller import (
    JS_CONSUMER_NOT_FOUND_ERR,
    JS_STREAM_NOT_FOUND_ERR,
    JetStreamController,
    NatsApiError,
    NotFoundError,
    Resource,
    Result,
    compare_config_state,
)

__all__ = [
    "CONSUMER_FINALIZER",
    "STATE_ANNOTATION_CONSUMER",
    "ConsumerReconciler",
]

CONSUMER_FINALIZER = "consumer.nats.io/finalizer"
STATE_ANNOTATION_CONSUMER = "consumer.nats.io/state"

log = logging.getLogger(__name__)


def _config_to_json(config: ConsumerConfig) -> str:
    data = dataclasses.asdict(config)
    data["deliver_policy"] = config.deliver_policy.value
    data["ack_policy"] = config.ack_policy.value
    data["replay_policy"] = config.replay_policy.value
    data["opt_start_time"] = (
        config.opt_start_time.isoformat() if config.opt_start_time else None
    )
    return json.dumps(data, sort_keys=True)


def _config_from_json(text: str) -> Optional[ConsumerConfig]:
    data = json.loads(text)
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("stored consumer state is not an object")
    known = {f.name for f in dataclasses.fields(ConsumerConfig)}
    kwargs = {key: value for key, value in data.items() if key in known}
    if "deliver_policy" in kwargs:
        kwargs["deliver_policy"] = DeliverPolicy(kwargs["deliver_policy"])
    if "ack_policy" in kwargs:
        kwargs["ack_policy"] = AckPolicy(kwargs["ack_policy"])
    if "replay_policy" in kwargs:
        kwargs["replay_policy"] = ReplayPolicy(kwargs["replay_policy"])
    if kwargs.get("opt_start_time"):
        kwargs["opt_start_time"] = datetime.fromisoformat(kwargs["opt_start_time"])
    try:
        return ConsumerConfig(**kwargs)
    except TypeError as exc:
        raise ValueError(f"invalid stored consumer state: {exc}") from exc


def _stored_state(consumer: Resource) -> Optional[ConsumerConfig]:
    state = consumer.annotations.get(STATE_ANNOTATION_CONSUMER)
    if state is None:
        return None
    return _config_from_json(state)


def _server_state(client: Any, consumer: Resource) -> Optional[ConsumerConfig]:
    """Current consumer configuration on the server, ``None`` if it does not exist."""
    try:
        return client.load_consumer(
            consumer.spec.stream_name, consumer.spec.durable_name
        )
    except NatsApiError as exc:
        if exc.error_code == JS_CONSUMER_NOT_FOUND_ERR:
            return None
        raise


class ConsumerReconciler:
    """Moves consumers on the server towards the state their resources describe.

    The client the controller provides must offer ``load_consumer(stream,
    durable)``, ``create_consumer(stream, config)``, ``update_consumer(stream,
    config)`` and ``delete_consumer(stream, durable)``; missing streams and
    consumers are reported as ``NatsApiError`` with the matching code.
    """

    def __init__(self, controller: JetStreamController) -> None:
        self.controller = controller

    @property
    def _store(self):
        return self.controller.store

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one reconciliation step for the named consumer resource."""
        if not self.controller.valid_namespace(namespace):
            log.info("Controller restricted to namespace, skipping reconciliation.")
            return Result()

        try:
            consumer = self._store.get(namespace, name)
        except NotFoundError:
            log.info("Consumer resource deleted: %s/%s", namespace, name)
            return Result()

        if not consumer.conditions:
            log.info("Setting initial ready condition to unknown.")
            consumer.conditions = update_ready_condition(
                consumer.conditions,
                ConditionStatus.UNKNOWN,
                STATE_RECONCILING,
                "Starting reconciliation",
            )
            try:
                self._store.update_status(consumer)
            except Exception as exc:
                raise RuntimeError(f"set condition unknown: {exc}") from exc
            return Result(requeue=True)

        if consumer.deletion_timestamp is not None:
            if CONSUMER_FINALIZER in consumer.finalizers:
                try:
                    self._delete_consumer(consumer)
                except Exception as exc:
                    raise RuntimeError(f"delete consumer: {exc}") from exc
            else:
                log.info("Consumer marked for deletion and already finalized. Ignoring.")
            return Result()

        if CONSUMER_FINALIZER not in consumer.finalizers:
            log.info("Adding consumer finalizer.")
            consumer.finalizers.append(CONSUMER_FINALIZER)
            try:
                self._store.update(consumer)
            except Exception as exc:
                raise RuntimeError(
                    f"update consumer resource to add finalizer: {exc}"
                ) from exc
            return Result()

        try:
            self._create_or_update(consumer)
        except Exception as exc:
            try:
                consumer = self._store.get(namespace, name)
            except Exception as get_exc:
                raise RuntimeError(f"get consumer resource: {get_exc}") from get_exc
            consumer.conditions = update_ready_condition(
                consumer.conditions, ConditionStatus.FALSE, STATE_ERRORED, str(exc)
            )
            try:
                self._store.update_status(consumer)
            except Exception:
                log.exception("Failed to update ready condition to Errored.")
            raise RuntimeError(f"create or update: {exc}") from exc

        return Result(requeue_after=self.controller.requeue_interval())

    def _delete_consumer(self, consumer: Resource) -> None:
        consumer.conditions = update_ready_condition(
            consumer.conditions,
            ConditionStatus.FALSE,
            STATE_FINALIZING,
            "Performing finalizer operations.",
        )
        try:
            self._store.update_status(consumer)
        except Exception as exc:
            raise RuntimeError(f"update ready condition: {exc}") from exc

        try:
            stored = _stored_state(consumer)
        except ValueError:
            log.exception("Failed to fetch stored state.")
            stored = None

        spec = consumer.spec
        if not spec.prevent_delete and not self.controller.read_only():

            def delete(client: Any) -> None:
                try:
                    _server_state(client, consumer)
                except Exception:
                    # Never reconciled and no answer from the server: nothing to delete.
                    if stored is None:
                        return
                client.delete_consumer(spec.stream_name, spec.durable_name)

            try:
                self.controller.with_client(spec.connection_opts, delete)
            except NatsApiError as exc:
                if exc.error_code == JS_CONSUMER_NOT_FOUND_ERR:
                    log.info("Consumer does not exist. Unable to delete.")
                elif exc.error_code == JS_STREAM_NOT_FOUND_ERR:
                    log.info("Stream of consumer does not exist. Unable to delete.")
                elif stored is None:
                    log.info(
                        "Consumer not reconciled and no state received from server. "
                        "Removing finalizer."
                    )
                else:
                    raise RuntimeError(f"delete jetstream consumer: {exc}") from exc
            except Exception as exc:
                if stored is None:
                    log.info(
                        "Consumer not reconciled and no state received from server. "
                        "Removing finalizer."
                    )
                else:
                    raise RuntimeError(f"delete jetstream consumer: {exc}") from exc
            else:
                log.info("Consumer deleted.")
        else:
            log.info(
                "Skipping consumer deletion: preventDelete=%s read-only=%s",
                spec.prevent_delete,
                self.controller.read_only(),
            )

        log.info("Removing consumer finalizer.")
        consumer.finalizers = [f for f in consumer.finalizers if f != CONSUMER_FINALIZER]
        try:
            self._store.update(consumer)
        except Exception as exc:
            raise RuntimeError(f"remove finalizer: {exc}") from exc

    def _create_or_update(self, consumer: Resource) -> None:
        spec = consumer.spec
        try:
            target = consumer_spec_to_config(spec)
        except ValueError as exc:
            raise RuntimeError(f"map consumer spec to target config: {exc}") from exc

        def apply(client: Any) -> None:
            try:
                stored = _stored_state(consumer)
            except ValueError:
                log.exception("Failed to fetch stored consumer state.")
                stored = None

            try:
                server = _server_state(client, consumer)
            except Exception as exc:
                raise RuntimeError(f"fetching consumer current state: {exc}") from exc

            if (
                stored is not None
                and server is not None
                and consumer.observed_generation == consumer.generation
            ):
                diff = compare_config_state(stored, server)
                if not diff:
                    return
                log.info("Consumer config drifted from desired state:\n%s", diff)

            if self.controller.read_only():
                log.info("Skipping consumer creation or update: read-only")
                return

            updated: Optional[ConsumerConfig] = None
            if server is None:
                log.info("Creating Consumer.")
                try:
                    updated = client.create_consumer(spec.stream_name, target)
                except Exception as exc:
                    raise RuntimeError(f"creating consumer: {exc}") from exc
            elif not spec.prevent_update:
                log.info("Updating Consumer.")
                try:
                    client.load_consumer(spec.stream_name, spec.durable_name)
                except Exception as exc:
                    raise RuntimeError(f"loading consumer: {exc}") from exc
                try:
                    client.update_consumer(spec.stream_name, target)
                except Exception as exc:
                    raise RuntimeError(
                        f"updating the consumer configuration: {exc}"
                    ) from exc
                try:
                    updated = client.load_consumer(spec.stream_name, spec.durable_name)
                except Exception as exc:
                    raise RuntimeError(f"loading updated consumer: {exc}") from exc
                log.info(
                    "Updated Consumer:\n%s", compare_config_state(updated, server)
                )
            else:
                log.info("Skipping Consumer update: preventUpdate")

            if updated is not None:
                consumer.annotations[STATE_ANNOTATION_CONSUMER] = _config_to_json(
                    updated
                )
                self._store.update(consumer)

        try:
            self.controller.with_client(spec.connection_opts, apply)
        except Exception as exc:
            message = f"create or update consumer: {exc}"
            consumer.conditions = update_ready_condition(
                consumer.conditions, ConditionStatus.FALSE, STATE_ERRORED, message
            )
            try:
                self._store.update_status(consumer)
            except Exception:
                log.exception("Failed to update ready condition to Errored.")
            raise RuntimeError(message) from exc

        consumer.observed_generation = consumer.generation
        consumer.conditions = update_ready_condition(
            consumer.conditions,
            ConditionStatus.TRUE,
            STATE_READY,
            "Consumer successfully created or updated.",
        )
        try:
            self._store.update_status(consumer)
        except Exception as exc:
            raise RuntimeError(f"update ready condition: {exc}") from exc