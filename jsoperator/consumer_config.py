"""Mapping of consumer resource specs onto JetStream consumer configurations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from jsoperator.durations import parse_duration, parse_rfc3339
from jsoperator.settings import ConnectionOpts

__all__ = [
    "AckPolicy",
    "DeliverPolicy",
    "ReplayPolicy",
    "ConsumerSpec",
    "ConsumerConfig",
    "consumer_spec_to_config",
]


class AckPolicy(str, Enum):
    """How messages delivered to a consumer are acknowledged."""

    NONE = "none"
    ALL = "all"
    EXPLICIT = "explicit"


class DeliverPolicy(str, Enum):
    """Where in the stream a consumer starts delivering."""

    ALL = "all"
    LAST = "last"
    NEW = "new"
    BY_START_SEQUENCE = "by_start_sequence"
    BY_START_TIME = "by_start_time"
    LAST_PER_SUBJECT = "last_per_subject"


class ReplayPolicy(str, Enum):
    """The pace at which stored messages are replayed."""

    INSTANT = "instant"
    ORIGINAL = "original"


@dataclass
class ConsumerSpec:
    """Desired state of a consumer, as written in the resource."""

    stream_name: str = ""
    durable_name: str = ""
    description: str = ""
    ack_policy: str = ""
    ack_wait: str = ""
    back_off: list[str] = field(default_factory=list)
    deliver_group: str = ""
    deliver_policy: str = ""
    deliver_subject: str = ""
    filter_subject: str = ""
    filter_subjects: list[str] = field(default_factory=list)
    flow_control: bool = False
    headers_only: bool = False
    heartbeat_interval: str = ""
    inactive_threshold: str = ""
    max_ack_pending: int = 0
    max_deliver: int = 0
    max_request_batch: int = 0
    max_request_expires: str = ""
    max_request_max_bytes: int = 0
    max_waiting: int = 0
    mem_storage: bool = False
    opt_start_seq: int = 0
    opt_start_time: str = ""
    rate_limit_bps: int = 0
    replay_policy: str = ""
    replicas: int = 0
    sample_freq: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    prevent_delete: bool = False
    prevent_update: bool = False
    connection_opts: ConnectionOpts = field(default_factory=ConnectionOpts)


@dataclass
class ConsumerConfig:
    """Consumer configuration as understood by the server.

    Durations are held in nanoseconds.
    """

    durable: str = ""
    description: str = ""
    deliver_subject: str = ""
    deliver_group: str = ""
    deliver_policy: DeliverPolicy = DeliverPolicy.ALL
    opt_start_seq: int = 0
    opt_start_time: Optional[datetime] = None
    ack_policy: AckPolicy = AckPolicy.NONE
    ack_wait: int = 0
    max_deliver: int = 0
    backoff: list[int] = field(default_factory=list)
    filter_subject: str = ""
    filter_subjects: list[str] = field(default_factory=list)
    replay_policy: ReplayPolicy = ReplayPolicy.INSTANT
    rate_limit: int = 0
    sample_frequency: str = ""
    max_waiting: int = 0
    max_ack_pending: int = 0
    flow_control: bool = False
    heartbeat: int = 0
    headers_only: bool = False
    max_request_batch: int = 0
    max_request_expires: int = 0
    max_request_max_bytes: int = 0
    inactive_threshold: int = 0
    replicas: int = 0
    memory_storage: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


_ACK_POLICIES = {
    "none": AckPolicy.NONE,
    "all": AckPolicy.ALL,
    "explicit": AckPolicy.EXPLICIT,
}

_REPLAY_POLICIES = {
    "instant": ReplayPolicy.INSTANT,
    "original": ReplayPolicy.ORIGINAL,
}

_SAMPLE_PERCENT = re.compile(r"[+-]?\d+")


def _duration(text: str, what: str) -> int:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise ValueError(f"{what}: {exc}") from exc


def _apply_deliver_policy(spec: ConsumerSpec, config: ConsumerConfig) -> None:
    policy = spec.deliver_policy
    if policy == "":
        return
    if policy in ("all", "last", "new"):
        config.deliver_policy = {
            "all": DeliverPolicy.ALL,
            "last": DeliverPolicy.LAST,
            "new": DeliverPolicy.NEW,
        }[policy]
        config.opt_start_seq = 0
        config.opt_start_time = None
    elif policy == "byStartSequence":
        config.deliver_policy = DeliverPolicy.BY_START_SEQUENCE
        config.opt_start_seq = spec.opt_start_seq
        config.opt_start_time = None
    elif policy == "byStartTime":
        if not spec.opt_start_time:
            raise ValueError(
                "'optStartTime' is required for deliver policy 'byStartTime'"
            )
        config.deliver_policy = DeliverPolicy.BY_START_TIME
        config.opt_start_seq = 0
        config.opt_start_time = parse_rfc3339(spec.opt_start_time)
    else:
        raise ValueError(
            f"invalid value for 'deliverPolicy': '{policy}'. Must be one of "
            "'all', 'last', 'new', 'byStartSequence', 'byStartTime'"
        )


def _apply_filter(config: ConsumerConfig, subjects: list[str]) -> None:
    if len(subjects) == 1:
        config.filter_subject = subjects[0]
        config.filter_subjects = []
    else:
        config.filter_subject = ""
        config.filter_subjects = list(subjects)


def _sample_frequency(text: str) -> str:
    number = text[:-1] if text.endswith("%") else text
    if not _SAMPLE_PERCENT.fullmatch(number):
        raise ValueError(f"invalid sample frequency {text!r}")
    percent = int(number)
    if not 0 <= percent <= 100:
        raise ValueError("sample percent must be 0-100")
    return f"{percent}%" if percent else ""


def consumer_spec_to_config(spec: ConsumerSpec) -> ConsumerConfig:
    """Build the consumer configuration a spec asks for.

    Raises ``ValueError`` when the spec holds an invalid value.
    """
    config = ConsumerConfig(
        durable=spec.durable_name,
        description=spec.description,
        deliver_subject=spec.deliver_subject,
        deliver_group=spec.deliver_group,
        max_ack_pending=spec.max_ack_pending,
        max_waiting=spec.max_waiting,
        rate_limit=spec.rate_limit_bps,
        max_request_batch=spec.max_request_batch,
        max_request_max_bytes=spec.max_request_max_bytes,
        replicas=spec.replicas,
        metadata=dict(spec.metadata),
    )

    if spec.ack_policy:
        try:
            config.ack_policy = _ACK_POLICIES[spec.ack_policy]
        except KeyError:
            raise ValueError(
                f"invalid value for 'ackPolicy': '{spec.ack_policy}'. "
                "Must be one of 'none', 'all', 'explicit'"
            ) from None

    if spec.ack_wait:
        config.ack_wait = _duration(spec.ack_wait, "invalid ack wait duration")

    _apply_deliver_policy(spec, config)

    if spec.filter_subject and spec.filter_subjects:
        raise ValueError("cannot set both 'filterSubject' and 'filterSubjects'")
    if spec.filter_subject:
        _apply_filter(config, [spec.filter_subject])
    elif spec.filter_subjects:
        _apply_filter(config, spec.filter_subjects)

    if spec.flow_control:
        config.flow_control = True

    if spec.heartbeat_interval:
        config.heartbeat = _duration(
            spec.heartbeat_interval, "invalid heartbeat interval"
        )

    if spec.max_deliver != 0:
        config.max_deliver = spec.max_deliver

    if spec.back_off:
        config.backoff = [_duration(b, "invalid backoff") for b in spec.back_off]

    if spec.replay_policy:
        try:
            config.replay_policy = _REPLAY_POLICIES[spec.replay_policy]
        except KeyError:
            raise ValueError(
                f"invalid value for 'replayPolicy': '{spec.replay_policy}'. "
                "Must be one of 'instant', 'original'"
            ) from None

    if spec.sample_freq:
        config.sample_frequency = _sample_frequency(spec.sample_freq)

    if spec.headers_only:
        config.headers_only = True

    if spec.max_request_expires:
        config.max_request_expires = _duration(
            spec.max_request_expires, "invalid max request expires"
        )

    if spec.inactive_threshold:
        config.inactive_threshold = _duration(
            spec.inactive_threshold, "invalid inactive threshold"
        )

    if spec.mem_storage:
        config.memory_storage = True

    return config