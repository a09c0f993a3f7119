"""Service configuration read from the environment."""

from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass, field
from typing import Mapping

from kelsync.gossip import DEFAULT_TOPIC

_U64_MAX = 2**64 - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")

_NO_VALUE = frozenset({"quic", "quic-v1", "ws", "wss", "tls", "noise", "http", "https"})
_NAME_VALUE = frozenset({"dns", "dns4", "dns6", "dnsaddr", "p2p"})
_PORT_VALUE = frozenset({"tcp", "udp"})


class ServiceError(Exception):
    """A failure of the gossip service."""


class ConfigError(ServiceError):
    """The service configuration is invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Configuration error: {message}")
        self.detail = message


def parse_multiaddr(text: str) -> str:
    """Validate a multiaddr such as ``/ip4/0.0.0.0/tcp/4001``; return it canonicalised."""
    if not text.startswith("/"):
        raise ValueError(f"invalid multiaddr {text!r}")
    parts = iter(text.split("/")[1:])
    out: list[str] = []
    for protocol in parts:
        if protocol in _NO_VALUE:
            out.append(protocol)
            continue
        value = next(parts, None)
        if value is None:
            raise ValueError(f"missing value for protocol {protocol!r}")
        if protocol == "ip4":
            out += [protocol, str(ipaddress.IPv4Address(value))]
        elif protocol == "ip6":
            if "%" in value:
                raise ValueError(f"invalid ip6 address {value!r}")
            out += [protocol, str(ipaddress.IPv6Address(value))]
        elif protocol in _PORT_VALUE:
            if not value.isascii() or not value.isdigit() or int(value) > 65535:
                raise ValueError(f"invalid port {value!r}")
            out += [protocol, str(int(value))]
        elif protocol in _NAME_VALUE:
            if not value:
                raise ValueError(f"empty value for protocol {protocol!r}")
            out += [protocol, value]
        else:
            raise ValueError(f"unknown protocol {protocol!r}")
    if not out:
        raise ValueError(f"invalid multiaddr {text!r}")
    return "/" + "/".join(out)


def _parse_delay(text: str | None) -> int:
    if text is None or not _UNSIGNED.fullmatch(text):
        return 0
    value = int(text)
    return value if value <= _U64_MAX else 0


@dataclass(frozen=True)
class Config:
    """Settings for the gossip service."""

    kels_url: str = "http://kels:80"
    redis_url: str = "redis://redis:6379"
    listen_addr: str = "/ip4/0.0.0.0/tcp/4001"
    bootstrap_peers: list[str] = field(default_factory=list)
    topic: str = DEFAULT_TOPIC
    # Artificial delay before broadcasting; for adversarial testing only.
    test_propagation_delay_ms: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Read the configuration from ``environ`` (default: the process environment)."""
        env = os.environ if environ is None else environ

        listen_text = env.get("GOSSIP_LISTEN_ADDR", "/ip4/0.0.0.0/tcp/4001")
        try:
            listen_addr = parse_multiaddr(listen_text)
        except ValueError as exc:
            raise ConfigError(f"Invalid listen address: {exc}") from exc

        bootstrap_peers = []
        for entry in env.get("GOSSIP_BOOTSTRAP_PEERS", "").split(","):
            if not entry:
                continue
            try:
                bootstrap_peers.append(parse_multiaddr(entry.strip()))
            except ValueError as exc:
                raise ConfigError(f"Invalid bootstrap peer {entry}: {exc}") from exc

        return cls(
            kels_url=env.get("KELS_URL", "http://kels:80"),
            redis_url=env.get("REDIS_URL", "redis://redis:6379"),
            listen_addr=listen_addr,
            bootstrap_peers=bootstrap_peers,
            topic=env.get("GOSSIP_TOPIC", DEFAULT_TOPIC),
            test_propagation_delay_ms=_parse_delay(
                env.get("GOSSIP_TEST_PROPAGATION_DELAY_MS")
            ),
        )