"""Connection and controller settings, and how they are layered."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

__all__ = [
    "TLS",
    "ConnectionOpts",
    "NatsConfig",
    "ControllerConfig",
    "nats_config_from_opts",
]


@dataclass
class TLS:
    """TLS files named in a resource's connection options."""

    client_cert: str = ""
    client_key: str = ""
    root_cas: list[str] = field(default_factory=list)


@dataclass
class ConnectionOpts:
    """Per-resource connection options."""

    account: str = ""
    creds: str = ""
    nkey: str = ""
    servers: list[str] = field(default_factory=list)
    tls: TLS = field(default_factory=TLS)
    tls_first: bool = False
    js_domain: str = ""


@dataclass
class NatsConfig:
    """Settings used to connect to a NATS server."""

    server_url: str = ""
    credentials: str = ""
    nkey: str = ""
    certificate: str = ""
    key: str = ""
    cas: list[str] = field(default_factory=list)
    tls_first: bool = False
    js_domain: str = ""
    user: str = ""
    password: str = ""
    token: str = ""

    def overlay(self, other: Optional["NatsConfig"]) -> None:
        """Copy every non-empty setting of ``other`` onto this config."""
        if other is None:
            return
        for f in dataclasses.fields(self):
            value = getattr(other, f.name)
            if value:
                setattr(self, f.name, list(value) if isinstance(value, list) else value)


@dataclass
class ControllerConfig:
    """Behaviour shared by all controllers.

    ``read_only`` prevents any change to NATS resources; ``namespace``
    restricts the controllers to resources of that namespace.
    """

    read_only: bool = False
    namespace: str = ""
    requeue_interval: timedelta = timedelta(0)
    cache_dir: str = ""


def nats_config_from_opts(opts: ConnectionOpts) -> NatsConfig:
    """Build the connection settings a resource's options ask for.

    Only settings the options actually give are filled in, so the result can
    be overlaid on a base config. A false ``tls_first`` never overrides.
    """
    config = NatsConfig()
    if opts.servers:
        config.server_url = ",".join(opts.servers)
    if opts.tls_first:
        config.tls_first = True
    if opts.creds:
        config.credentials = opts.creds
    if opts.nkey:
        config.nkey = opts.nkey
    if opts.tls.root_cas:
        config.cas = list(opts.tls.root_cas)
    if opts.tls.client_cert and opts.tls.client_key:
        config.certificate = opts.tls.client_cert
        config.key = opts.tls.client_key
    if opts.js_domain:
        config.js_domain = opts.js_domain
    return config