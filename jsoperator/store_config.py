"""Mapping of key-value and object store resource specs onto bucket configurations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from jsoperator.durations import parse_duration, parse_rfc3339
from jsoperator.settings import ConnectionOpts

__all__ = [
    "KV_STREAM_PREFIX",
    "OBJ_STREAM_PREFIX",
    "StorageType",
    "Placement",
    "RePublish",
    "SubjectTransform",
    "StreamSource",
    "ExternalStream",
    "StreamSourceConfig",
    "KeyValueSpec",
    "ObjectStoreSpec",
    "KeyValueConfig",
    "ObjectStoreConfig",
    "map_stream_source",
    "key_value_spec_to_config",
    "object_store_spec_to_config",
]

KV_STREAM_PREFIX = "KV_"
OBJ_STREAM_PREFIX = "OBJ_"


class StorageType(str, Enum):
    """Where a bucket keeps its data."""

    FILE = "file"
    MEMORY = "memory"

    @classmethod
    def parse(cls, text: str) -> "StorageType":
        """Return the storage type named by ``text``; raises ``ValueError`` otherwise."""
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"can not unmarshal {text!r}") from None


@dataclass
class Placement:
    """Cluster and server tags a bucket is placed on."""

    cluster: str = ""
    tags: list[str] = field(default_factory=list)


@dataclass
class RePublish:
    """Republishing of stored messages to another subject."""

    source: str = ""
    destination: str = ""
    headers_only: bool = False


@dataclass
class SubjectTransform:
    """A subject mapping from ``source`` to ``dest``."""

    source: str = ""
    dest: str = ""


@dataclass
class StreamSource:
    """A mirror or source as written in the resource."""

    name: str = ""
    opt_start_seq: int = 0
    opt_start_time: str = ""
    filter_subject: str = ""
    external_api_prefix: str = ""
    external_deliver_prefix: str = ""
    subject_transforms: list[SubjectTransform] = field(default_factory=list)


@dataclass
class ExternalStream:
    """API and delivery prefixes of a stream in another domain or account."""

    api_prefix: str = ""
    deliver_prefix: str = ""


@dataclass
class StreamSourceConfig:
    """A mirror or source as understood by the server."""

    name: str = ""
    opt_start_seq: int = 0
    opt_start_time: Optional[datetime] = None
    filter_subject: str = ""
    subject_transforms: list[SubjectTransform] = field(default_factory=list)
    external: Optional[ExternalStream] = None
    domain: str = ""


@dataclass
class KeyValueSpec:
    """Desired state of a key-value bucket, as written in the resource."""

    bucket: str = ""
    description: str = ""
    history: int = 0
    max_value_size: int = 0
    max_bytes: int = 0
    ttl: str = ""
    storage: str = ""
    replicas: int = 0
    compression: bool = False
    placement: Optional[Placement] = None
    mirror: Optional[StreamSource] = None
    sources: Optional[list[StreamSource]] = None
    republish: Optional[RePublish] = None
    prevent_delete: bool = False
    prevent_update: bool = False
    connection_opts: ConnectionOpts = field(default_factory=ConnectionOpts)


@dataclass
class ObjectStoreSpec:
    """Desired state of an object store bucket, as written in the resource."""

    bucket: str = ""
    description: str = ""
    max_bytes: int = 0
    ttl: str = ""
    storage: str = ""
    replicas: int = 0
    compression: bool = False
    placement: Optional[Placement] = None
    metadata: dict[str, str] = field(default_factory=dict)
    prevent_delete: bool = False
    prevent_update: bool = False
    connection_opts: ConnectionOpts = field(default_factory=ConnectionOpts)


@dataclass
class KeyValueConfig:
    """Key-value bucket configuration as understood by the server.

    ``ttl`` is held in nanoseconds.
    """

    bucket: str = ""
    description: str = ""
    max_value_size: int = 0
    history: int = 0
    ttl: int = 0
    max_bytes: int = 0
    storage: StorageType = StorageType.FILE
    replicas: int = 0
    placement: Optional[Placement] = None
    republish: Optional[RePublish] = None
    mirror: Optional[StreamSourceConfig] = None
    sources: Optional[list[StreamSourceConfig]] = None
    compression: bool = False


@dataclass
class ObjectStoreConfig:
    """Object store bucket configuration as understood by the server.

    ``ttl`` is held in nanoseconds.
    """

    bucket: str = ""
    description: str = ""
    ttl: int = 0
    max_bytes: int = 0
    storage: StorageType = StorageType.FILE
    replicas: int = 0
    placement: Optional[Placement] = None
    compression: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


def _wrap_unsigned(value: int, bits: int) -> int:
    return value & ((1 << bits) - 1)


def _wrap_signed(value: int, bits: int) -> int:
    value = _wrap_unsigned(value, bits)
    return value - (1 << bits) if value >= 1 << (bits - 1) else value


def _copy_placement(placement: Optional[Placement]) -> Optional[Placement]:
    if placement is None:
        return None
    return Placement(cluster=placement.cluster, tags=list(placement.tags))


def _ttl(text: str) -> int:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise ValueError(f"invalid ttl: {exc}") from exc


def _storage(text: str) -> StorageType:
    try:
        return StorageType.parse(text)
    except ValueError as exc:
        raise ValueError(f"invalid storage: {exc}") from exc


def map_stream_source(source: StreamSource) -> StreamSourceConfig:
    """Build the server form of a mirror or source.

    Raises ``ValueError`` when the start time is not a valid RFC 3339 timestamp.
    """
    config = StreamSourceConfig(
        name=source.name,
        opt_start_seq=source.opt_start_seq,
        filter_subject=source.filter_subject,
        subject_transforms=[
            SubjectTransform(source=t.source, dest=t.dest)
            for t in source.subject_transforms
        ],
    )
    if source.opt_start_time:
        config.opt_start_time = parse_rfc3339(source.opt_start_time)
    if source.external_api_prefix or source.external_deliver_prefix:
        config.external = ExternalStream(
            api_prefix=source.external_api_prefix,
            deliver_prefix=source.external_deliver_prefix,
        )
    return config


def key_value_spec_to_config(spec: KeyValueSpec) -> KeyValueConfig:
    """Build the key-value bucket configuration a spec asks for.

    Raises ``ValueError`` when the spec holds an invalid value.
    """
    config = KeyValueConfig(
        bucket=spec.bucket,
        compression=spec.compression,
        description=spec.description,
        history=_wrap_unsigned(spec.history, 8),
        max_bytes=spec.max_bytes,
        max_value_size=_wrap_signed(spec.max_value_size, 32),
        replicas=spec.replicas,
    )

    if spec.ttl:
        config.ttl = _ttl(spec.ttl)
    if spec.storage:
        config.storage = _storage(spec.storage)
    config.placement = _copy_placement(spec.placement)

    if spec.mirror is not None:
        try:
            config.mirror = map_stream_source(spec.mirror)
        except ValueError as exc:
            raise ValueError(f"map mirror keyvalue source: {exc}") from exc

    if spec.sources is not None:
        sources = []
        for source in spec.sources:
            try:
                sources.append(map_stream_source(source))
            except ValueError as exc:
                raise ValueError(f"map keyvalue source: {exc}") from exc
        config.sources = sources

    if spec.republish is not None:
        config.republish = RePublish(
            source=spec.republish.source,
            destination=spec.republish.destination,
            headers_only=spec.republish.headers_only,
        )

    return config


def object_store_spec_to_config(spec: ObjectStoreSpec) -> ObjectStoreConfig:
    """Build the object store bucket configuration a spec asks for.

    Raises ``ValueError`` when the spec holds an invalid value.
    """
    config = ObjectStoreConfig(
        bucket=spec.bucket,
        description=spec.description,
        max_bytes=spec.max_bytes,
        replicas=spec.replicas,
        compression=spec.compression,
        metadata=dict(spec.metadata),
    )
    if spec.ttl:
        config.ttl = _ttl(spec.ttl)
    if spec.storage:
        config.storage = _storage(spec.storage)
    config.placement = _copy_placement(spec.placement)
    return config