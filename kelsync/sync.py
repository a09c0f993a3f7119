"""Bridges local log updates, the gossip network and the local log service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from kelsync.errors import ContestedKel, KelsError, KeyNotFound
from kelsync.gossip import (
    Announce,
    AnnouncementReceived,
    GossipCommand,
    GossipEvent,
    KelRequestReceived,
    KelResponseReceived,
    PeerConnected,
    PeerDisconnected,
    RequestKel,
    RespondKel,
)
from kelsync.protocol import KelAnnouncement, KelSyncResponse
from kelsync.types import BatchSubmitResponse, SignedKeyEvent

logger = logging.getLogger(__name__)

PUBSUB_CHANNEL = "kel_updates"

_QueueShutDown: type[BaseException] = getattr(asyncio, "QueueShutDown", RuntimeError)
_CLOSED = (RuntimeError, _QueueShutDown)


class SyncError(Exception):
    """A failure while synchronising logs."""


@dataclass(frozen=True)
class SyncConfig:
    kels_url: str
    redis_url: str


class KelsClient(Protocol):
    """The parts of a log service client that synchronisation needs."""

    async def fetch_full_kel(self, prefix: str) -> Sequence[SignedKeyEvent]: ...

    async def submit_events(
        self, events: Sequence[SignedKeyEvent]
    ) -> BatchSubmitResponse: ...


class CommandSink(Protocol):
    async def put(self, item: Any) -> None: ...


async def _send(commands: CommandSink, command: GossipCommand) -> None:
    try:
        await commands.put(command)
    except _CLOSED as exc:
        raise SyncError("Channel closed") from exc


def _as_text(payload: Any) -> str | None:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        try:
            return bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.warning("Failed to get Redis message payload: %s", exc)
            return None
    logger.warning("Failed to get Redis message payload: unexpected %r", type(payload))
    return None


async def announce_messages(
    messages: AsyncIterable[str | bytes],
    commands: CommandSink,
    propagation_delay_ms: int = 0,
) -> int:
    """Turn ``{prefix}:{said}`` messages into announce commands.

    ``propagation_delay_ms`` delays each announcement and exists only to
    simulate slow propagation in tests. Returns the number announced.
    """
    announced = 0
    async for raw in messages:
        payload = _as_text(raw)
        if payload is None:
            continue
        logger.debug("Received Redis pub/sub message: %s", payload)
        announcement = KelAnnouncement.from_pubsub_message(payload)
        if announcement is None:
            continue
        if propagation_delay_ms > 0:
            logger.debug("Delaying announcement by %dms (test mode)", propagation_delay_ms)
            await asyncio.sleep(propagation_delay_ms / 1000)
        logger.debug(
            "Broadcasting announcement: prefix=%s, said=%s",
            announcement.prefix,
            announcement.said,
        )
        try:
            await _send(commands, Announce(announcement))
        except SyncError:
            logger.error("Failed to send announce command - channel closed")
            raise
        announced += 1
    return announced


async def _payloads(pubsub: Any) -> AsyncIterator[Any]:
    async for message in pubsub.listen():
        if message.get("type") == "message":
            yield message.get("data")


async def run_redis_subscriber(
    redis_url: str, commands: CommandSink, propagation_delay_ms: int = 0
) -> None:
    """Subscribe to local log updates and broadcast them as announcements."""
    try:
        client = aioredis.Redis.from_url(redis_url)
    except (RedisError, ValueError) as exc:
        raise SyncError(f"Redis error: {exc}") from exc
    try:
        async with client.pubsub() as pubsub:
            await pubsub.subscribe(PUBSUB_CHANNEL)
            logger.info("Subscribed to Redis channel: %s", PUBSUB_CHANNEL)
            await announce_messages(_payloads(pubsub), commands, propagation_delay_ms)
    except RedisError as exc:
        raise SyncError(f"Redis error: {exc}") from exc
    finally:
        await client.aclose()
    logger.warning("Redis subscriber stream ended")


class SyncHandler:
    """Reacts to gossip events, fetching and submitting logs as needed."""

    def __init__(self, kels_client: KelsClient) -> None:
        self.kels_client = kels_client
        self.local_saids: dict[str, str] = {}
        self.pending_fetches: dict[str, str] = {}

    async def handle_event(self, event: GossipEvent, commands: CommandSink) -> None:
        match event:
            case AnnouncementReceived(peer_id=peer_id, announcement=announcement):
                await self._handle_announcement(peer_id, announcement, commands)
            case KelRequestReceived(peer_id=peer_id, channel=channel, request=request):
                await self._handle_kel_request(peer_id, channel, request.prefix, commands)
            case KelResponseReceived(response=response):
                await self._handle_kel_response(response)
            case PeerConnected(peer_id=peer_id):
                logger.debug("Peer connected: %s", peer_id)
            case PeerDisconnected(peer_id=peer_id):
                logger.debug("Peer disconnected: %s", peer_id)
                self.pending_fetches = {
                    prefix: pid
                    for prefix, pid in self.pending_fetches.items()
                    if pid != peer_id
                }
            case _:
                raise TypeError(f"unknown gossip event: {event!r}")

    async def _handle_announcement(
        self, peer_id: str, announcement: KelAnnouncement, commands: CommandSink
    ) -> None:
        prefix, remote_said = announcement.prefix, announcement.said
        local_said = await self._local_said(prefix)
        if local_said == remote_said:
            logger.debug("Already in sync for prefix %s", prefix)
            return
        if prefix in self.pending_fetches:
            logger.debug("Already fetching prefix %s from another peer", prefix)
            return
        logger.info(
            "SAID mismatch for %s: local=%s, remote=%s. Fetching from %s",
            prefix, local_said, remote_said, peer_id,
        )
        self.pending_fetches[prefix] = peer_id
        await _send(commands, RequestKel(peer_id=peer_id, prefix=prefix))

    async def _handle_kel_request(
        self, peer_id: str, channel: Any, prefix: str, commands: CommandSink
    ) -> None:
        logger.info("Received KEL request from %s for prefix %s", peer_id, prefix)
        events = await self._fetch_local_kel(prefix)
        logger.info("Sending %d events for prefix %s to %s", len(events), prefix, peer_id)
        response = KelSyncResponse(prefix=prefix, events=events)
        await _send(commands, RespondKel(channel=channel, response=response))

    async def _handle_kel_response(self, response: KelSyncResponse) -> None:
        prefix = response.prefix
        self.pending_fetches.pop(prefix, None)
        if not response.events:
            logger.warning("Received empty KEL response for %s", prefix)
            return
        logger.info("Received %d events for prefix %s from peer", len(response.events), prefix)
        await self._submit(response.events)
        self.local_saids[prefix] = response.events[-1].event.said

    async def _local_said(self, prefix: str) -> str | None:
        cached = self.local_saids.get(prefix)
        if cached is not None:
            return cached
        events = await self._fetch_local_kel(prefix)
        if not events:
            return None
        said = events[-1].event.said
        self.local_saids[prefix] = said
        return said

    async def _fetch_local_kel(self, prefix: str) -> list[SignedKeyEvent]:
        try:
            return list(await self.kels_client.fetch_full_kel(prefix))
        except KeyNotFound:
            return []
        except KelsError as exc:
            raise SyncError(f"KELS client error: {exc}") from exc

    async def _submit(self, events: Sequence[SignedKeyEvent]) -> None:
        try:
            result = await self.kels_client.submit_events(events)
        except ContestedKel as exc:
            logger.warning("KEL is contested: %s", exc)
            return
        except KelsError as exc:
            raise SyncError(f"KELS client error: {exc}") from exc
        if result.accepted:
            logger.info("Events accepted by local KELS")
        else:
            logger.warning(
                "Events not accepted by local KELS: diverged_at=%s", result.diverged_at
            )


async def run_sync_handler(
    kels_client: KelsClient,
    events: AsyncIterable[GossipEvent],
    commands: CommandSink,
) -> None:
    """Handle gossip events until the event stream ends, logging failures."""
    handler = SyncHandler(kels_client)
    async for event in events:
        try:
            await handler.handle_event(event, commands)
        except SyncError as exc:
            logger.error("Error handling gossip event: %s", exc)
    logger.warning("Event receiver closed")