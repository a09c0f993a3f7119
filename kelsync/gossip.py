"""Gossip-layer messages, commands and the JSON wire codec."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

from kelsync.errors import KelsError
from kelsync.protocol import KelAnnouncement, KelRequest, KelSyncResponse

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "kels/events/v1"
AGENT_VERSION = "/kels-gossip/1.0.0"
HEARTBEAT_INTERVAL_SECONDS = 1.0
IDLE_CONNECTION_TIMEOUT_SECONDS = 60.0


class GossipError(Exception):
    """A failure in the gossip layer."""


# -- events emitted to the sync layer --------------------------------------


@dataclass(frozen=True)
class AnnouncementReceived:
    peer_id: str
    announcement: KelAnnouncement


@dataclass(frozen=True)
class KelRequestReceived:
    peer_id: str
    channel: Any
    request: KelRequest


@dataclass(frozen=True)
class KelResponseReceived:
    peer_id: str
    response: KelSyncResponse


@dataclass(frozen=True)
class PeerConnected:
    peer_id: str


@dataclass(frozen=True)
class PeerDisconnected:
    peer_id: str


GossipEvent = Union[
    AnnouncementReceived,
    KelRequestReceived,
    KelResponseReceived,
    PeerConnected,
    PeerDisconnected,
]


# -- commands sent from the sync layer -------------------------------------


@dataclass(frozen=True)
class Announce:
    announcement: KelAnnouncement


@dataclass(frozen=True)
class RequestKel:
    peer_id: str
    prefix: str


@dataclass(frozen=True)
class RespondKel:
    channel: Any
    response: KelSyncResponse


GossipCommand = Union[Announce, RequestKel, RespondKel]


# -- codec -----------------------------------------------------------------


class _Reader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class _Writer(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


def _encode(data: Any) -> bytes:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class JsonCodec:
    """Reads and writes whole-stream JSON requests and responses."""

    @staticmethod
    async def _read_json(reader: _Reader) -> Any:
        raw = await reader.read()
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise GossipError(f"IO error: invalid data: {exc}") from exc

    @staticmethod
    async def _write(writer: _Writer, payload: bytes) -> None:
        writer.write(payload)
        await writer.drain()
        writer.close()
        await writer.wait_closed()

    async def read_request(self, reader: _Reader) -> KelRequest:
        data = await self._read_json(reader)
        try:
            return KelRequest.from_dict(data)
        except (KeyError, TypeError) as exc:
            raise GossipError(f"IO error: invalid data: {exc}") from exc

    async def read_response(self, reader: _Reader) -> KelSyncResponse:
        data = await self._read_json(reader)
        try:
            return KelSyncResponse.from_dict(data)
        except (KeyError, TypeError, ValueError, KelsError) as exc:
            raise GossipError(f"IO error: invalid data: {exc}") from exc

    async def write_request(self, writer: _Writer, request: KelRequest) -> None:
        await self._write(writer, _encode(request.to_dict()))

    async def write_response(self, writer: _Writer, response: KelSyncResponse) -> None:
        await self._write(writer, _encode(response.to_dict()))


def message_id(data: bytes) -> str:
    """Deduplication id for a gossip message: a decimal 64-bit content hash."""
    digest = hashlib.blake2b(data, digest_size=8).digest()
    return str(int.from_bytes(digest, "big"))


def decode_announcement(data: bytes) -> KelAnnouncement | None:
    """Parse a gossip payload; malformed payloads are logged and dropped."""
    try:
        return KelAnnouncement.from_json(data)
    except ValueError as exc:
        logger.warning("Failed to parse announcement: %s", exc)
        return None