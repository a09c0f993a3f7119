# kelsync

Data types for key event logs (KELs) and the logic that keeps KELs in step
between independent key event log services.

A KEL is a chain of self-addressed key events: an inception (`icp`) or
delegated inception (`dip`), followed by rotations (`rot`), interactions
(`ixn`), and the dual-signed recovery family (`rec`, `ror`, `dec`, `cnt`).
Each event carries a SAID (self-addressing identifier): a Blake2b-256 digest
of the event's own content in qualified base64 form. The inception's SAID is
also the prefix of the whole log.

## What is in the package

- `kelsync.types` – `EventKind`, `KelMergeResult`, `RecoveryOutcome`,
  `KeyEvent`, `SignedKeyEvent`, `KeyEventSignature`, `EventSignature`,
  `KelsAuditRecord` and the request/response records `ErrorResponse`,
  `BatchSubmitResponse`, `BatchKelPrefixRequest`, `BatchKelsRequest`,
  `KelResponse`, `CachedKel` and `ContestedPrefix`. Every record converts to
  and from plain dictionaries with camelCase keys via `to_dict` and
  `from_dict`.
- `kelsync.errors` – `KelsError` and its subclasses `InvalidKeyEvent`,
  `KeyNotFound` and `ContestedKel`.
- `kelsync.store` – the abstract `KelStore` for keeping KELs locally, and
  `MemoryKelStore`, an in-memory implementation. A store with an
  `owner_prefix` will not let `cache` overwrite the owner's own,
  authoritative log.
- `kelsync.protocol` – the gossip messages `KelAnnouncement`, `KelRequest`
  and `KelSyncResponse`, and `PROTOCOL_NAME`.
- `kelsync.gossip` – the events passed to the sync layer
  (`AnnouncementReceived`, `KelRequestReceived`, `KelResponseReceived`,
  `PeerConnected`, `PeerDisconnected`), the commands it sends back
  (`Announce`, `RequestKel`, `RespondKel`), the whole-stream JSON codec
  `JsonCodec`, `GossipError`, and the helpers `message_id` (a decimal 64-bit
  content hash for deduplication) and `decode_announcement`.
- `kelsync.sync` – `SyncHandler`, which compares announced SAIDs with the
  local service, asks peers for logs it lacks and submits what they send;
  `announce_messages`, `run_redis_subscriber` and `run_sync_handler`.
- `kelsync.config` – `Config.from_env` reads the service settings from the
  environment; `parse_multiaddr` checks and canonicalises multiaddrs.

## Building events

```python
from kelsync.types import EventKind, KeyEvent, SignedKeyEvent

icp = KeyEvent.create_inception("Dpublic-key", "Erotation-digest", "Erecovery-digest")
assert icp.kind is EventKind.parse("ICP")
assert icp.prefix == icp.said
assert icp.verify_said()

ixn = icp.create_interaction("Eanchored-said")
assert ixn.version == 1 and ixn.previous == icp.said

signed = SignedKeyEvent.single(ixn, "Dpublic-key", "0Bsignature")
print(signed.to_dict())
```

Recovery, recovery rotation, decommission and contest events reveal the
recovery key and need two signatures; `SignedKeyEvent.new_recovery` builds
such an event with both. `EventKind.parse` raises `InvalidKeyEvent` for an
unknown kind.

## Announcements

Local updates arrive on the Redis channel `kel_updates` as `{prefix}:{said}`.

```python
from kelsync.protocol import KelAnnouncement

announcement = KelAnnouncement.from_pubsub_message("Eprefix123:EsaidABC")
assert announcement.prefix == "Eprefix123"
assert announcement.said == "EsaidABC"

# An empty SAID marks a deletion and is not announced.
assert KelAnnouncement.from_pubsub_message("Eprefix123:") is None
```

`run_redis_subscriber(redis_url, commands)` subscribes to that channel and
puts an `Announce` command on `commands` (anything with an async `put`, such
as an `asyncio.Queue`) for each update. `announce_messages` does the same for
any async iterable of messages.

## Synchronising

`SyncHandler` takes a client object with two coroutine methods:
`fetch_full_kel(prefix)`, returning the log's signed events or raising
`KeyNotFound`, and `submit_events(events)`, returning a `BatchSubmitResponse`.

```python
import asyncio

from kelsync.errors import KeyNotFound
from kelsync.gossip import AnnouncementReceived
from kelsync.protocol import KelAnnouncement
from kelsync.sync import SyncHandler
from kelsync.types import BatchSubmitResponse


class EmptyService:
    async def fetch_full_kel(self, prefix):
        raise KeyNotFound(prefix)

    async def submit_events(self, events):
        return BatchSubmitResponse(accepted=True)


async def main():
    commands = asyncio.Queue()
    handler = SyncHandler(EmptyService())
    event = AnnouncementReceived("peer-a", KelAnnouncement("Eprefix", "Esaid"))
    await handler.handle_event(event, commands)
    print(await commands.get())  # RequestKel(peer_id='peer-a', prefix='Eprefix')


asyncio.run(main())
```

`run_sync_handler(kels_client, events, commands)` feeds every event from an
async iterable through one `SyncHandler`, logging failures, until the
iterable ends.

## Configuration

`Config.from_env` reads these variables (from `os.environ`, or from the
mapping passed in):

| Variable | Default |
| --- | --- |
| `KELS_URL` | `http://kels:80` |
| `REDIS_URL` | `redis://redis:6379` |
| `GOSSIP_LISTEN_ADDR` | `/ip4/0.0.0.0/tcp/4001` |
| `GOSSIP_BOOTSTRAP_PEERS` | empty (comma-separated multiaddrs) |
| `GOSSIP_TOPIC` | `kels/events/v1` |
| `GOSSIP_TEST_PROPAGATION_DELAY_MS` | `0` |

A malformed listen address or bootstrap peer raises `ConfigError`; a delay
that is not an unsigned integer is read as `0`.

```python
from kelsync.config import Config

config = Config.from_env({"GOSSIP_TOPIC": "kels/events/test"})
print(config.topic, config.kels_url)
```

The propagation delay is meant only for testing adversarial scenarios; leave
it at zero in production.

## What the package does not do

- It has no peer-to-peer transport. The gossip events and commands, the
  codec and the message helpers are here, but nothing opens connections,
  dials the bootstrap peers or publishes to the topic; that is left to the
  caller, who passes events into `SyncHandler` and carries out the commands
  it produces.
- It has no HTTP client or server for a key event log service. The client
  that `SyncHandler` uses must be supplied.
- It does not verify signatures or merge submitted events into a log; the
  `KelMergeResult` values only name the possible outcomes.
- It installs no command; the service is assembled from the pieces above.