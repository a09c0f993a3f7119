import asyncio

import pytest

from kelsync.errors import ContestedKel, KelsError, KeyNotFound
from kelsync.gossip import (
    Announce,
    AnnouncementReceived,
    KelRequestReceived,
    KelResponseReceived,
    PeerConnected,
    PeerDisconnected,
    RequestKel,
    RespondKel,
)
from kelsync.protocol import KelAnnouncement, KelRequest, KelSyncResponse
from kelsync.sync import (
    SyncError,
    SyncHandler,
    announce_messages,
    run_sync_handler,
)
from kelsync.types import BatchSubmitResponse, KeyEvent, SignedKeyEvent


def _kel(length=2):
    event = KeyEvent.create_inception("pk0", "rh0", "rc0")
    events = [SignedKeyEvent.single(event, "pk0", "sig0")]
    for i in range(1, length):
        event = event.create_rotation(f"pk{i}", f"rh{i}")
        events.append(SignedKeyEvent.single(event, f"pk{i}", f"sig{i}"))
    return events


class FakeClient:
    def __init__(self, kels=None, submit_error=None, fetch_error=None, accepted=True):
        self.kels = dict(kels or {})
        self.submit_error = submit_error
        self.fetch_error = fetch_error
        self.accepted = accepted
        self.fetches = []
        self.submitted = []

    async def fetch_full_kel(self, prefix):
        self.fetches.append(prefix)
        if self.fetch_error is not None:
            raise self.fetch_error
        if prefix not in self.kels:
            raise KeyNotFound(prefix)
        return self.kels[prefix]

    async def submit_events(self, events):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(list(events))
        return BatchSubmitResponse(accepted=self.accepted)


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


async def _aiter(items):
    for item in items:
        yield item


@pytest.mark.asyncio
async def test_unknown_prefix_announcement_requests_kel():
    handler = SyncHandler(FakeClient())
    commands = asyncio.Queue()
    ann = KelAnnouncement("Eprefix", "Esaid")
    await handler.handle_event(AnnouncementReceived("peer-a", ann), commands)
    assert _drain(commands) == [RequestKel(peer_id="peer-a", prefix="Eprefix")]
    assert handler.pending_fetches == {"Eprefix": "peer-a"}


@pytest.mark.asyncio
async def test_matching_said_sends_nothing():
    events = _kel()
    prefix = events[0].event.prefix
    client = FakeClient({prefix: events})
    handler = SyncHandler(client)
    commands = asyncio.Queue()
    ann = KelAnnouncement(prefix, events[-1].event.said)
    await handler.handle_event(AnnouncementReceived("peer-a", ann), commands)
    assert _drain(commands) == []
    assert handler.local_saids == {prefix: events[-1].event.said}


@pytest.mark.asyncio
async def test_local_said_is_cached():
    events = _kel()
    prefix = events[0].event.prefix
    client = FakeClient({prefix: events})
    handler = SyncHandler(client)
    commands = asyncio.Queue()
    ann = KelAnnouncement(prefix, events[-1].event.said)
    await handler.handle_event(AnnouncementReceived("p", ann), commands)
    await handler.handle_event(AnnouncementReceived("p", ann), commands)
    assert client.fetches == [prefix]


@pytest.mark.asyncio
async def test_pending_fetch_suppresses_duplicate_request():
    handler = SyncHandler(FakeClient())
    commands = asyncio.Queue()
    ann = KelAnnouncement("Eprefix", "Esaid")
    await handler.handle_event(AnnouncementReceived("peer-a", ann), commands)
    await handler.handle_event(AnnouncementReceived("peer-b", ann), commands)
    assert _drain(commands) == [RequestKel(peer_id="peer-a", prefix="Eprefix")]
    assert handler.pending_fetches["Eprefix"] == "peer-a"


@pytest.mark.asyncio
async def test_kel_request_is_answered_with_local_events():
    events = _kel(3)
    prefix = events[0].event.prefix
    handler = SyncHandler(FakeClient({prefix: events}))
    commands = asyncio.Queue()
    channel = object()
    await handler.handle_event(
        KelRequestReceived("peer-a", channel, KelRequest(prefix)), commands
    )
    (command,) = _drain(commands)
    assert isinstance(command, RespondKel)
    assert command.channel is channel
    assert command.response == KelSyncResponse(prefix, events)


@pytest.mark.asyncio
async def test_kel_request_for_missing_prefix_returns_empty():
    handler = SyncHandler(FakeClient())
    commands = asyncio.Queue()
    await handler.handle_event(
        KelRequestReceived("peer-a", None, KelRequest("Emissing")), commands
    )
    (command,) = _drain(commands)
    assert command.response.events == []
    assert command.response.prefix == "Emissing"


@pytest.mark.asyncio
async def test_response_submits_and_updates_said():
    events = _kel(2)
    prefix = events[0].event.prefix
    client = FakeClient()
    handler = SyncHandler(client)
    commands = asyncio.Queue()
    await handler.handle_event(
        AnnouncementReceived("peer-a", KelAnnouncement(prefix, events[-1].event.said)),
        commands,
    )
    await handler.handle_event(
        KelResponseReceived("peer-a", KelSyncResponse(prefix, events)), commands
    )
    assert client.submitted == [events]
    assert handler.pending_fetches == {}
    assert handler.local_saids[prefix] == events[-1].event.said

    _drain(commands)
    await handler.handle_event(
        AnnouncementReceived("peer-b", KelAnnouncement(prefix, events[-1].event.said)),
        commands,
    )
    assert _drain(commands) == []


@pytest.mark.asyncio
async def test_empty_response_clears_pending_without_submitting():
    client = FakeClient()
    handler = SyncHandler(client)
    handler.pending_fetches["Eprefix"] = "peer-a"
    await handler.handle_event(
        KelResponseReceived("peer-a", KelSyncResponse("Eprefix", [])), asyncio.Queue()
    )
    assert client.submitted == []
    assert "Eprefix" not in handler.pending_fetches
    assert "Eprefix" not in handler.local_saids


@pytest.mark.asyncio
async def test_rejected_submission_still_records_said():
    events = _kel(1)
    prefix = events[0].event.prefix
    handler = SyncHandler(FakeClient(accepted=False))
    await handler.handle_event(
        KelResponseReceived("p", KelSyncResponse(prefix, events)), asyncio.Queue()
    )
    assert handler.local_saids[prefix] == events[0].event.said


@pytest.mark.asyncio
async def test_contested_submission_is_tolerated():
    events = _kel(1)
    prefix = events[0].event.prefix
    handler = SyncHandler(FakeClient(submit_error=ContestedKel("frozen")))
    await handler.handle_event(
        KelResponseReceived("p", KelSyncResponse(prefix, events)), asyncio.Queue()
    )
    assert handler.local_saids[prefix] == events[0].event.said


@pytest.mark.asyncio
async def test_submission_failure_raises_sync_error():
    events = _kel(1)
    handler = SyncHandler(FakeClient(submit_error=KelsError("boom")))
    with pytest.raises(SyncError, match="boom"):
        await handler.handle_event(
            KelResponseReceived("p", KelSyncResponse(events[0].event.prefix, events)),
            asyncio.Queue(),
        )


@pytest.mark.asyncio
async def test_fetch_failure_raises_sync_error():
    handler = SyncHandler(FakeClient(fetch_error=KelsError("down")))
    with pytest.raises(SyncError, match="down"):
        await handler.handle_event(
            AnnouncementReceived("p", KelAnnouncement("E1", "E2")), asyncio.Queue()
        )


@pytest.mark.asyncio
async def test_disconnect_clears_only_that_peers_fetches():
    handler = SyncHandler(FakeClient())
    handler.pending_fetches.update({"E1": "peer-a", "E2": "peer-b", "E3": "peer-a"})
    await handler.handle_event(PeerConnected("peer-c"), asyncio.Queue())
    await handler.handle_event(PeerDisconnected("peer-a"), asyncio.Queue())
    assert handler.pending_fetches == {"E2": "peer-b"}


@pytest.mark.asyncio
async def test_announce_messages_skips_deletions_and_garbage():
    commands = asyncio.Queue()
    messages = ["Eprefix123:EsaidABC", "Eprefix123:", "nocolon", b"Ebytes:Esaid", b"\xff"]
    count = await announce_messages(_aiter(messages), commands, 0)
    assert count == 2
    assert _drain(commands) == [
        Announce(KelAnnouncement("Eprefix123", "EsaidABC")),
        Announce(KelAnnouncement("Ebytes", "Esaid")),
    ]


@pytest.mark.asyncio
async def test_announce_messages_with_delay():
    commands = asyncio.Queue()
    count = await announce_messages(_aiter(["E1:E2"]), commands, 1)
    assert count == 1
    assert _drain(commands) == [Announce(KelAnnouncement("E1", "E2"))]


@pytest.mark.asyncio
async def test_run_sync_handler_continues_after_errors():
    client = FakeClient(fetch_error=KelsError("down"))
    commands = asyncio.Queue()
    events = [
        AnnouncementReceived("p", KelAnnouncement("E1", "E2")),
        KelResponseReceived("p", KelSyncResponse("E1", [])),
    ]
    await run_sync_handler(client, _aiter(events), commands)
    assert client.fetches == ["E1"]
    assert _drain(commands) == []