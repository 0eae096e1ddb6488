"""Reconciliation of key-value and object store resources with buckets on a NATS server."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from jsoperator.conditions import (
    STATE_ERRORED,
    STATE_FINALIZING,
    STATE_READY,
    STATE_RECONCILING,
    ConditionStatus,
    update_ready_condition,
)
from jsoperator.controller import (
    JS_STREAM_NOT_FOUND_ERR,
    JetStreamController,
    NatsApiError,
    NotFoundError,
    Resource,
    Result,
    compare_config_state,
)
from jsoperator.store_config import (
    KV_STREAM_PREFIX,
    OBJ_STREAM_PREFIX,
    key_value_spec_to_config,
    object_store_spec_to_config,
)

__all__ = [
    "KEY_VALUE_FINALIZER",
    "OBJECT_STORE_FINALIZER",
    "STATE_ANNOTATION_KV",
    "STATE_ANNOTATION_OBJ",
    "KeyValueReconciler",
    "ObjectStoreReconciler",
]

KEY_VALUE_FINALIZER = "kv.nats.io/finalizer"
OBJECT_STORE_FINALIZER = "objectstore.nats.io/finalizer"
STATE_ANNOTATION_KV = "kv.nats.io/state"
STATE_ANNOTATION_OBJ = "objectstore.nats.io/state"

log = logging.getLogger(__name__)


class _BucketReconciler(ABC):
    """Common reconciliation steps of bucket-backed resources.

    The client the controller provides must offer ``stream_config(name)``,
    returning the stream's configuration as a JSON-compatible mapping, and
    the create, update and delete operations of the bucket kind. A missing
    stream or bucket is reported as ``NatsApiError`` with the stream-not-found
    code.
    """

    kind = ""
    noun = ""
    finalizer = ""
    annotation = ""
    stream_prefix = ""
    spec_to_config: Callable[[Any], Any]

    def __init__(self, controller: JetStreamController) -> None:
        self.controller = controller

    @property
    def _store(self):
        return self.controller.store

    @abstractmethod
    def _create(self, client: Any, config: Any) -> None:
        """Create the bucket from the given configuration."""

    @abstractmethod
    def _update(self, client: Any, config: Any) -> None:
        """Update the bucket to the given configuration."""

    @abstractmethod
    def _delete(self, client: Any, bucket: str) -> None:
        """Delete the named bucket."""

    def _reconcile(self, namespace: str, name: str) -> Result:
        if not self.controller.valid_namespace(namespace):
            log.info("Controller restricted to namespace, skipping reconciliation.")
            return Result()

        try:
            resource = self._store.get(namespace, name)
        except NotFoundError:
            log.info("%s resource deleted: %s/%s", self.kind, namespace, name)
            return Result()

        if not resource.conditions:
            log.info("Setting initial ready condition to unknown.")
            resource.conditions = update_ready_condition(
                resource.conditions,
                ConditionStatus.UNKNOWN,
                STATE_RECONCILING,
                "Starting reconciliation",
            )
            try:
                self._store.update_status(resource)
            except Exception as exc:
                raise RuntimeError(f"set condition unknown: {exc}") from exc
            return Result(requeue=True)

        if resource.deletion_timestamp is not None:
            if self.finalizer in resource.finalizers:
                try:
                    self._finalize(resource)
                except Exception as exc:
                    raise RuntimeError(f"delete {self.noun}: {exc}") from exc
            else:
                log.info(
                    "%s marked for deletion and already finalized. Ignoring.",
                    self.kind,
                )
            return Result()

        if self.finalizer not in resource.finalizers:
            log.info("Adding %s finalizer.", self.kind)
            resource.finalizers.append(self.finalizer)
            try:
                self._store.update(resource)
            except Exception as exc:
                raise RuntimeError(
                    f"update {self.noun} resource to add finalizer: {exc}"
                ) from exc
            return Result()

        try:
            self._create_or_update(resource)
        except Exception as exc:
            raise RuntimeError(f"create or update: {exc}") from exc

        return Result(requeue_after=self.controller.requeue_interval())

    def _stored_state(self, resource: Resource) -> Optional[Any]:
        state = resource.annotations.get(self.annotation)
        if state is None:
            return None
        try:
            return json.loads(state)
        except ValueError:
            log.exception("Failed to fetch stored %s state.", self.kind)
            return None

    def _server_state(self, client: Any, bucket: str) -> Optional[Any]:
        """Current stream configuration of the bucket, ``None`` if it does not exist."""
        try:
            config = client.stream_config(self.stream_prefix + bucket)
        except NatsApiError as exc:
            if exc.error_code == JS_STREAM_NOT_FOUND_ERR:
                return None
            raise
        return json.loads(json.dumps(config, default=str))

    def _finalize(self, resource: Resource) -> None:
        resource.conditions = update_ready_condition(
            resource.conditions,
            ConditionStatus.FALSE,
            STATE_FINALIZING,
            "Performing finalizer operations.",
        )
        try:
            self._store.update_status(resource)
        except Exception as exc:
            raise RuntimeError(f"update ready condition: {exc}") from exc

        stored = self._stored_state(resource)
        spec = resource.spec

        if not spec.prevent_delete and not self.controller.read_only():
            log.info("Deleting %s.", self.kind)

            def delete(client: Any) -> None:
                try:
                    self._server_state(client, spec.bucket)
                except Exception:
                    # Never reconciled and no answer from the server: nothing to delete.
                    if stored is None:
                        return
                self._delete(client, spec.bucket)

            try:
                self.controller.with_client(spec.connection_opts, delete)
            except NatsApiError as exc:
                if exc.error_code == JS_STREAM_NOT_FOUND_ERR:
                    log.info("%s does not exist, unable to delete.", self.kind)
                elif stored is None:
                    log.info(
                        "%s not reconciled and no state received from server. "
                        "Removing finalizer.",
                        self.kind,
                    )
                else:
                    raise RuntimeError(
                        f"delete {self.noun} during finalization: {exc}"
                    ) from exc
            except Exception as exc:
                if stored is None:
                    log.info(
                        "%s not reconciled and no state received from server. "
                        "Removing finalizer.",
                        self.kind,
                    )
                else:
                    raise RuntimeError(
                        f"delete {self.noun} during finalization: {exc}"
                    ) from exc
        else:
            log.info(
                "Skipping %s deletion: preventDelete=%s read-only=%s",
                self.kind,
                spec.prevent_delete,
                self.controller.read_only(),
            )

        log.info("Removing %s finalizer.", self.kind)
        resource.finalizers = [f for f in resource.finalizers if f != self.finalizer]
        try:
            self._store.update(resource)
        except Exception as exc:
            raise RuntimeError(f"remove finalizer: {exc}") from exc

    def _create_or_update(self, resource: Resource) -> None:
        spec = resource.spec
        try:
            target = type(self).spec_to_config(spec)
        except ValueError as exc:
            raise RuntimeError(
                f"map spec to {self.noun} targetConfig: {exc}"
            ) from exc

        def apply(client: Any) -> None:
            stored = self._stored_state(resource)
            server = self._server_state(client, spec.bucket)

            if (
                stored is not None
                and server is not None
                and resource.observed_generation == resource.generation
            ):
                diff = compare_config_state(stored, server)
                if not diff:
                    return
                log.info("%s config drifted from desired state:\n%s", self.kind, diff)

            if self.controller.read_only():
                log.info("Skipping %s creation or update: read-only", self.kind)
                return

            changed = False
            if server is None:
                log.info("Creating %s.", self.kind)
                self._create(client, target)
                changed = True
            elif not spec.prevent_update:
                log.info("Updating %s.", self.kind)
                self._update(client, target)
                changed = True
                try:
                    refreshed = self._server_state(client, spec.bucket)
                except Exception:
                    log.exception("Failed to fetch updated %s state", self.kind)
                else:
                    log.info(
                        "Updated %s:\n%s",
                        self.kind,
                        compare_config_state(refreshed, server),
                    )
            else:
                log.info("Skipping %s update: preventUpdate", self.kind)

            if changed:
                server = self._server_state(client, spec.bucket)
                resource.annotations[self.annotation] = json.dumps(
                    server, sort_keys=True
                )
                self._store.update(resource)

        try:
            self.controller.with_client(spec.connection_opts, apply)
        except Exception as exc:
            message = f"create or update {self.noun}: {exc}"
            resource.conditions = update_ready_condition(
                resource.conditions, ConditionStatus.FALSE, STATE_ERRORED, message
            )
            try:
                self._store.update_status(resource)
            except Exception:
                log.exception("Failed to update ready condition to Errored.")
            raise RuntimeError(message) from exc

        resource.observed_generation = resource.generation
        resource.conditions = update_ready_condition(
            resource.conditions,
            ConditionStatus.TRUE,
            STATE_READY,
            f"{self.kind} successfully created or updated.",
        )
        try:
            self._store.update_status(resource)
        except Exception as exc:
            raise RuntimeError(f"update ready condition: {exc}") from exc


class KeyValueReconciler(_BucketReconciler):
    """Moves key-value buckets towards the state their resources describe.

    The client must offer ``stream_config(name)``, ``create_key_value(config)``,
    ``update_key_value(config)`` and ``delete_key_value(bucket)``.
    """

    kind = "KeyValue"
    noun = "keyvalue"
    finalizer = KEY_VALUE_FINALIZER
    annotation = STATE_ANNOTATION_KV
    stream_prefix = KV_STREAM_PREFIX
    spec_to_config = staticmethod(key_value_spec_to_config)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one reconciliation step for the named key-value resource.

        Each call performs at most one action and expects to be called again.
        """
        return self._reconcile(namespace, name)

    def _create(self, client: Any, config: Any) -> None:
        client.create_key_value(config)

    def _update(self, client: Any, config: Any) -> None:
        client.update_key_value(config)

    def _delete(self, client: Any, bucket: str) -> None:
        client.delete_key_value(bucket)


class ObjectStoreReconciler(_BucketReconciler):
    """Moves object store buckets towards the state their resources describe.

    The client must offer ``stream_config(name)``,
    ``create_object_store(config)``, ``update_object_store(config)`` and
    ``delete_object_store(bucket)``.
    """

    kind = "ObjectStore"
    noun = "objectstore"
    finalizer = OBJECT_STORE_FINALIZER
    annotation = STATE_ANNOTATION_OBJ
    stream_prefix = OBJ_STREAM_PREFIX
    spec_to_config = staticmethod(object_store_spec_to_config)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one reconciliation step for the named object store resource.

        Each call performs at most one action and expects to be called again.
        """
        return self._reconcile(namespace, name)

    def _create(self, client: Any, config: Any) -> None:
        client.create_object_store(config)

    def _update(self, client: Any, config: Any) -> None:
        client.update_object_store(config)

    def _delete(self, client: Any, bucket: str) -> None:
        client.delete_object_store(bucket)