"""Shared machinery of the resource controllers."""

from __future__ import annotations

import copy
import dataclasses
import difflib
import pprint
import random
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from jsoperator.conditions import Condition
from jsoperator.settings import (
    ConnectionOpts,
    ControllerConfig,
    NatsConfig,
    nats_config_from_opts,
)

__all__ = [
    "JS_CONSUMER_NOT_FOUND_ERR",
    "JS_STREAM_NOT_FOUND_ERR",
    "NatsApiError",
    "NotFoundError",
    "Resource",
    "Result",
    "InMemoryResourceStore",
    "JetStreamController",
    "version_components",
    "compare_config_state",
]

JS_CONSUMER_NOT_FOUND_ERR = 10014
JS_STREAM_NOT_FOUND_ERR = 10059

_SEMVER = re.compile(r"v?([0-9]+)\.?([0-9]+)?\.?([0-9]+)?")

T = TypeVar("T")


class NatsApiError(Exception):
    """An error answer of the JetStream API, identified by its error code."""

    def __init__(self, error_code: int, description: str = "") -> None:
        super().__init__(description or f"nats api error {error_code}")
        self.error_code = error_code
        self.description = description


class NotFoundError(LookupError):
    """A requested resource does not exist."""


@dataclass
class Resource:
    """A managed resource: metadata, desired spec and observed status."""

    name: str
    namespace: str = "default"
    spec: Any = None
    generation: int = 1
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = 0


@dataclass
class Result:
    """Outcome of one reconciliation: whether and when to run it again."""

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)

    def is_zero(self) -> bool:
        """True when no further reconciliation was asked for."""
        return not self.requeue and self.requeue_after == timedelta(0)


class InMemoryResourceStore:
    """Holds resources and applies updates the way an API server does.

    A spec change raises the generation; status is written only by
    ``update_status``; a resource marked for deletion goes away once its
    last finalizer is removed.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], Resource] = {}
        self._lock = threading.Lock()

    def add(self, resource: Resource) -> None:
        """Store a new resource; raises ``ValueError`` if it already exists."""
        key = (resource.namespace, resource.name)
        with self._lock:
            if key in self._items:
                raise ValueError(
                    f"resource '{resource.namespace}/{resource.name}' already exists"
                )
            self._items[key] = copy.deepcopy(resource)

    def get(self, namespace: str, name: str) -> Resource:
        """Return a copy of the stored resource."""
        with self._lock:
            return copy.deepcopy(self._stored(namespace, name))

    def update(self, resource: Resource) -> None:
        """Write the resource's spec and metadata, leaving its status alone."""
        with self._lock:
            stored = self._stored(resource.namespace, resource.name)
            if resource.spec != stored.spec:
                stored.generation += 1
            stored.spec = copy.deepcopy(resource.spec)
            stored.annotations = dict(resource.annotations)
            stored.finalizers = list(resource.finalizers)
            resource.generation = stored.generation
            resource.deletion_timestamp = stored.deletion_timestamp
            if stored.deletion_timestamp is not None and not stored.finalizers:
                del self._items[(resource.namespace, resource.name)]

    def update_status(self, resource: Resource) -> None:
        """Write the resource's status, leaving its spec and metadata alone."""
        with self._lock:
            stored = self._stored(resource.namespace, resource.name)
            stored.conditions = copy.deepcopy(resource.conditions)
            stored.observed_generation = resource.observed_generation

    def _stored(self, namespace: str, name: str) -> Resource:
        try:
            return self._items[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"resource '{namespace}/{name}' not found") from None


class JetStreamController:
    """Settings and connections shared by the resource reconcilers.

    ``client_factory`` turns connection settings into a client; a client
    with a ``close`` method is closed after use. ``account_resolver`` maps
    an account name to the connection settings that account provides, or
    ``None`` if there is no such account.
    """

    def __init__(
        self,
        store: InMemoryResourceStore,
        client_factory: Callable[[NatsConfig], Any],
        nats_config: Optional[NatsConfig] = None,
        config: Optional[ControllerConfig] = None,
        account_resolver: Optional[Callable[[str], Optional[NatsConfig]]] = None,
    ) -> None:
        self.store = store
        self.nats_config = nats_config or NatsConfig()
        self.config = config or ControllerConfig()
        self._client_factory = client_factory
        self._account_resolver = account_resolver

    def read_only(self) -> bool:
        """True when no changes should be made to NATS resources."""
        return self.config.read_only

    def valid_namespace(self, namespace: str) -> bool:
        """True if the namespace restriction allows the given namespace."""
        restriction = self.config.namespace
        return restriction == "" or restriction == namespace

    def requeue_interval(self) -> timedelta:
        """The configured requeue interval, staggered by up to 10 percent."""
        interval = self.config.requeue_interval
        factor = random.uniform(-1.0, 1.0)
        return interval + interval * (0.1 * factor)

    def connection_config(self, opts: ConnectionOpts) -> NatsConfig:
        """Layer the base settings, the account's settings and the resource's options."""
        config = NatsConfig()
        config.overlay(self.nats_config)

        if opts.account:
            account = (
                self._account_resolver(opts.account)
                if self._account_resolver is not None
                else None
            )
            if account is None:
                raise NotFoundError(f"account '{opts.account}' not found")
            config.overlay(account)

        config.overlay(nats_config_from_opts(opts))
        return config

    def with_client(self, opts: ConnectionOpts, op: Callable[[Any], T]) -> T:
        """Run ``op`` with a client connected as ``opts`` asks, and return its result."""
        client = self._client_factory(self.connection_config(opts))
        try:
            return op(client)
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                close()


def version_components(version: str) -> tuple[int, int, int]:
    """Split a version such as ``"v2.10.3"`` into major, minor and patch.

    All three parts must be present; raises ``ValueError`` otherwise.
    """
    match = _SEMVER.match(version)
    if match is None:
        raise ValueError("invalid semver")
    major, minor, patch = (int(part or "") for part in match.groups())
    return major, minor, patch


def _plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


def compare_config_state(actual: Any, desired: Any) -> str:
    """Return a readable diff from ``desired`` to ``actual``; empty when equal."""
    if actual == desired:
        return ""
    desired_lines = pprint.pformat(_plain(desired)).splitlines()
    actual_lines = pprint.pformat(_plain(actual)).splitlines()
    diff = list(
        difflib.unified_diff(
            desired_lines, actual_lines, "desired", "actual", lineterm=""
        )
    )
    if not diff:
        diff = [f"-{desired!r}", f"+{actual!r}"]
    return "\n".join(diff)