"""Key events, signatures and the request and response shapes built from them."""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from kelsync.errors import InvalidKeyEvent

_SAID_LENGTH = 44
_PLACEHOLDER = "#" * _SAID_LENGTH


def _digest(data: bytes) -> str:
    """Return a 44-character Blake2b-256 digest in qualified base64 form."""
    raw = hashlib.blake2b(data, digest_size=32).digest()
    encoded = base64.urlsafe_b64encode(b"\x00" + raw).decode("ascii")
    return "F" + encoded[1:]


def _canonical(data: Mapping[str, Any]) -> bytes:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_datetime(text: str) -> datetime:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _strip_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


class EventKind(str, Enum):
    """The kind of a key event, serialised as its lower-case name."""

    ICP = "icp"  # inception
    DIP = "dip"  # delegated inception
    ROT = "rot"  # rotation
    IXN = "ixn"  # interaction (anchor)
    REC = "rec"  # recovery (dual-signed)
    ROR = "ror"  # recovery rotation (dual-signed)
    DEC = "dec"  # decommission (dual-signed)
    CNT = "cnt"  # contest (dual-signed, freezes the log)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> EventKind:
        """Parse a kind name, ignoring case."""
        try:
            return cls(text.lower())
        except ValueError:
            raise InvalidKeyEvent(f"Unknown event kind: {text}") from None

    @classmethod
    def _from_wire(cls, text: str) -> EventKind:
        try:
            return cls(text)
        except ValueError:
            raise InvalidKeyEvent(f"Unknown event kind: {text}") from None

    def is_inception(self) -> bool:
        return self in (EventKind.ICP, EventKind.DIP)

    def is_establishment(self) -> bool:
        """Establishment events carry a public key."""
        return self is not EventKind.IXN

    def reveals_recovery_key(self) -> bool:
        return self in (EventKind.REC, EventKind.ROR, EventKind.DEC, EventKind.CNT)

    def requires_dual_signature(self) -> bool:
        return self.reveals_recovery_key()

    def decommissions(self) -> bool:
        return self in (EventKind.DEC, EventKind.CNT)


class KelMergeResult(Enum):
    """Outcome of merging submitted events into a key event log."""

    VERIFIED = "verified"
    RECOVERED = "recovered"
    RECOVERABLE = "recoverable"
    CONTESTABLE = "contestable"
    CONTESTED = "contested"
    FROZEN = "frozen"
    RECOVERY_PROTECTED = "recovery_protected"


class RecoveryOutcome(Enum):
    """What happened to a log after a dual-signed recovery attempt."""

    RECOVERED = "recovered"
    CONTESTED = "contested"


@dataclass(frozen=True)
class ErrorResponse:
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ErrorResponse:
        return cls(error=data["error"])


@dataclass(frozen=True)
class KeyEvent:
    """A single self-addressed event in a key event log."""

    said: str
    prefix: str
    version: int
    kind: EventKind
    created_at: datetime
    previous: str | None = None
    public_key: str | None = None
    rotation_hash: str | None = None
    recovery_key: str | None = None
    recovery_hash: str | None = None
    anchor: str | None = None
    delegating_prefix: str | None = None

    # -- construction -------------------------------------------------

    def _addressed(self) -> KeyEvent:
        inception = self.kind.is_inception()
        draft = replace(
            self,
            said=_PLACEHOLDER,
            prefix=_PLACEHOLDER if inception else self.prefix,
        )
        said = _digest(_canonical(draft.to_dict()))
        return replace(self, said=said, prefix=said if inception else self.prefix)

    @classmethod
    def _incept(cls, kind: EventKind, public_key: str, rotation_hash: str,
                recovery_hash: str, delegating_prefix: str | None) -> KeyEvent:
        event = cls(
            said="",
            prefix="",
            version=0,
            kind=kind,
            created_at=_now(),
            public_key=public_key,
            rotation_hash=rotation_hash,
            recovery_hash=recovery_hash,
            delegating_prefix=delegating_prefix,
        )
        return event._addressed()

    @classmethod
    def create_inception(cls, public_key: str, rotation_hash: str,
                         recovery_hash: str) -> KeyEvent:
        return cls._incept(EventKind.ICP, public_key, rotation_hash, recovery_hash, None)

    @classmethod
    def create_delegated_inception(cls, public_key: str, rotation_hash: str,
                                   recovery_hash: str, delegating_prefix: str) -> KeyEvent:
        return cls._incept(
            EventKind.DIP, public_key, rotation_hash, recovery_hash, delegating_prefix
        )

    def _next(self, kind: EventKind, **fields: Any) -> KeyEvent:
        values: dict[str, Any] = {
            "public_key": None,
            "rotation_hash": None,
            "recovery_key": None,
            "recovery_hash": None,
            "anchor": None,
            "delegating_prefix": None,
        }
        values.update(fields)
        event = replace(
            self,
            kind=kind,
            previous=self.said,
            version=self.version + 1,
            created_at=_now(),
            **values,
        )
        return event._addressed()

    def create_rotation(self, public_key: str, rotation_hash: str | None) -> KeyEvent:
        return self._next(EventKind.ROT, public_key=public_key, rotation_hash=rotation_hash)

    def create_interaction(self, anchor: str) -> KeyEvent:
        return self._next(EventKind.IXN, anchor=anchor)

    def create_recovery(self, public_key: str, rotation_hash: str, recovery_key: str,
                        recovery_hash: str) -> KeyEvent:
        return self._next(
            EventKind.REC,
            public_key=public_key,
            rotation_hash=rotation_hash,
            recovery_key=recovery_key,
            recovery_hash=recovery_hash,
        )

    def create_recovery_rotation(self, public_key: str, rotation_hash: str,
                                 recovery_key: str, recovery_hash: str) -> KeyEvent:
        return self._next(
            EventKind.ROR,
            public_key=public_key,
            rotation_hash=rotation_hash,
            recovery_key=recovery_key,
            recovery_hash=recovery_hash,
        )

    def create_decommission(self, public_key: str, recovery_key: str) -> KeyEvent:
        return self._next(EventKind.DEC, public_key=public_key, recovery_key=recovery_key)

    def create_contest(self, public_key: str, recovery_key: str) -> KeyEvent:
        return self._next(EventKind.CNT, public_key=public_key, recovery_key=recovery_key)

    # -- predicates ----------------------------------------------------

    def is_inception(self) -> bool:
        return self.kind is EventKind.ICP

    def is_delegated_inception(self) -> bool:
        return self.kind is EventKind.DIP

    def is_rotation(self) -> bool:
        return self.kind is EventKind.ROT

    def is_recovery(self) -> bool:
        return self.kind is EventKind.REC

    def is_recovery_rotation(self) -> bool:
        return self.kind is EventKind.ROR

    def is_decommission(self) -> bool:
        return self.kind is EventKind.DEC

    def is_contest(self) -> bool:
        return self.kind is EventKind.CNT

    def is_interaction(self) -> bool:
        return self.kind is EventKind.IXN

    def is_establishment(self) -> bool:
        return self.kind.is_establishment()

    def reveals_recovery_key(self) -> bool:
        return self.kind.reveals_recovery_key()

    def has_recovery_hash(self) -> bool:
        return self.recovery_hash is not None

    def requires_dual_signature(self) -> bool:
        return self.kind.requires_dual_signature()

    def decommissions(self) -> bool:
        return self.kind.decommissions()

    def verify_said(self) -> bool:
        """Check that the SAID (and an inception prefix) match the content."""
        expected = self._addressed()
        return expected.said == self.said and expected.prefix == self.prefix

    # -- serialisation -------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return _strip_none({
            "said": self.said,
            "prefix": self.prefix,
            "previous": self.previous,
            "version": self.version,
            "publicKey": self.public_key,
            "rotationHash": self.rotation_hash,
            "recoveryKey": self.recovery_key,
            "recoveryHash": self.recovery_hash,
            "kind": self.kind.value,
            "anchor": self.anchor,
            "delegatingPrefix": self.delegating_prefix,
            "createdAt": _format_datetime(self.created_at),
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KeyEvent:
        return cls(
            said=data["said"],
            prefix=data["prefix"],
            version=int(data["version"]),
            kind=EventKind._from_wire(data["kind"]),
            created_at=_parse_datetime(data["createdAt"]),
            previous=data.get("previous"),
            public_key=data.get("publicKey"),
            rotation_hash=data.get("rotationHash"),
            recovery_key=data.get("recoveryKey"),
            recovery_hash=data.get("recoveryHash"),
            anchor=data.get("anchor"),
            delegating_prefix=data.get("delegatingPrefix"),
        )


@dataclass(frozen=True)
class EventSignature:
    """A stored signature, self-addressed and linked to its event."""

    said: str
    event_said: str
    public_key: str
    signature: str

    @classmethod
    def create(cls, event_said: str, public_key: str, signature: str) -> EventSignature:
        draft = cls(_PLACEHOLDER, event_said, public_key, signature)
        return replace(draft, said=_digest(_canonical(draft.to_dict())))

    def to_dict(self) -> dict[str, Any]:
        return {
            "said": self.said,
            "eventSaid": self.event_said,
            "publicKey": self.public_key,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EventSignature:
        return cls(
            said=data["said"],
            event_said=data["eventSaid"],
            public_key=data["publicKey"],
            signature=data["signature"],
        )


@dataclass(frozen=True)
class KeyEventSignature:
    public_key: str
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {"publicKey": self.public_key, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KeyEventSignature:
        return cls(public_key=data["publicKey"], signature=data["signature"])


@dataclass(frozen=True)
class SignedKeyEvent:
    """A key event together with the signatures over it."""

    event: KeyEvent
    signatures: list[KeyEventSignature] = field(default_factory=list)

    @classmethod
    def single(cls, event: KeyEvent, public_key: str, signature: str) -> SignedKeyEvent:
        return cls(event, [KeyEventSignature(public_key, signature)])

    @classmethod
    def new_recovery(cls, event: KeyEvent, primary_public_key: str, primary_signature: str,
                     secondary_public_key: str, secondary_signature: str) -> SignedKeyEvent:
        return cls(event, [
            KeyEventSignature(primary_public_key, primary_signature),
            KeyEventSignature(secondary_public_key, secondary_signature),
        ])

    @classmethod
    def from_signatures(cls, event: KeyEvent,
                        sigs: Iterable[tuple[str, str]]) -> SignedKeyEvent:
        return cls(event, [KeyEventSignature(key, sig) for key, sig in sigs])

    def signature(self, public_key: str) -> KeyEventSignature | None:
        return next((s for s in self.signatures if s.public_key == public_key), None)

    def has_dual_signatures(self) -> bool:
        return len(self.signatures) >= 2

    def event_signatures(self) -> list[EventSignature]:
        return [
            EventSignature.create(self.event.said, s.public_key, s.signature)
            for s in self.signatures
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "signatures": [s.to_dict() for s in self.signatures],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SignedKeyEvent:
        return cls(
            event=KeyEvent.from_dict(data["event"]),
            signatures=[KeyEventSignature.from_dict(s) for s in data["signatures"]],
        )


@dataclass(frozen=True)
class BatchSubmitResponse:
    """Result of submitting events; ``accepted`` must be checked."""

    accepted: bool
    diverged_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _strip_none({"divergedAt": self.diverged_at, "accepted": self.accepted})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BatchSubmitResponse:
        return cls(accepted=bool(data["accepted"]), diverged_at=data.get("divergedAt"))


@dataclass(frozen=True)
class KelsAuditRecord:
    """Archive of events removed from a log during recovery or contest."""

    said: str
    kel_prefix: str
    kind: EventKind
    data_json: str
    recorded_at: datetime

    @classmethod
    def create(cls, kel_prefix: str, kind: EventKind, data_json: str) -> KelsAuditRecord:
        draft = cls(_PLACEHOLDER, kel_prefix, kind, data_json, _now())
        return replace(draft, said=_digest(_canonical(draft.to_dict())))

    @staticmethod
    def _encode(events: Sequence[SignedKeyEvent]) -> str:
        return json.dumps(
            [e.to_dict() for e in events], separators=(",", ":"), ensure_ascii=False
        )

    @classmethod
    def for_recovery(cls, kel_prefix: str,
                     events: Sequence[SignedKeyEvent]) -> KelsAuditRecord:
        return cls.create(kel_prefix, EventKind.REC, cls._encode(events))

    @classmethod
    def for_contest(cls, kel_prefix: str,
                    events: Sequence[SignedKeyEvent]) -> KelsAuditRecord:
        return cls.create(kel_prefix, EventKind.CNT, cls._encode(events))

    def as_signed_key_events(self) -> list[SignedKeyEvent]:
        return [SignedKeyEvent.from_dict(item) for item in json.loads(self.data_json)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "said": self.said,
            "kelPrefix": self.kel_prefix,
            "kind": self.kind.value,
            "dataJson": self.data_json,
            "recordedAt": _format_datetime(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KelsAuditRecord:
        return cls(
            said=data["said"],
            kel_prefix=data["kelPrefix"],
            kind=EventKind._from_wire(data["kind"]),
            data_json=data["dataJson"],
            recorded_at=_parse_datetime(data["recordedAt"]),
        )


@dataclass(frozen=True)
class BatchKelPrefixRequest:
    prefix: str
    since: str | None = None  # RFC 3339 timestamp filter

    def to_dict(self) -> dict[str, Any]:
        return _strip_none({"prefix": self.prefix, "since": self.since})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BatchKelPrefixRequest:
        return cls(prefix=data["prefix"], since=data.get("since"))


@dataclass(frozen=True)
class BatchKelsRequest:
    prefixes: list[BatchKelPrefixRequest] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"prefixes": [p.to_dict() for p in self.prefixes]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BatchKelsRequest:
        return cls(prefixes=[BatchKelPrefixRequest.from_dict(p) for p in data["prefixes"]])


@dataclass(frozen=True)
class KelResponse:
    """A log's events, which may include divergent events at one version."""

    events: list[SignedKeyEvent] = field(default_factory=list)
    audit_records: list[KelsAuditRecord] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"events": [e.to_dict() for e in self.events]}
        if self.audit_records is not None:
            data["auditRecords"] = [r.to_dict() for r in self.audit_records]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KelResponse:
        records = data.get("auditRecords")
        return cls(
            events=[SignedKeyEvent.from_dict(e) for e in data["events"]],
            audit_records=(
                None if records is None else [KelsAuditRecord.from_dict(r) for r in records]
            ),
        )


@dataclass(frozen=True)
class CachedKel:
    prefix: str
    events: list[SignedKeyEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"prefix": self.prefix, "events": [e.to_dict() for e in self.events]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CachedKel:
        return cls(
            prefix=data["prefix"],
            events=[SignedKeyEvent.from_dict(e) for e in data["events"]],
        )


@dataclass(frozen=True)
class ContestedPrefix:
    prefix: str

    def to_dict(self) -> dict[str, Any]:
        return {"prefix": self.prefix}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContestedPrefix:
        return cls(prefix=data["prefix"])