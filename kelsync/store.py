"""Local persistence of key event logs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from kelsync.errors import KelsError
from kelsync.types import SignedKeyEvent


def _prefix_of(events: Sequence[SignedKeyEvent]) -> str | None:
    return events[0].event.prefix if events else None


class KelStore(ABC):
    """Persists key event logs keyed by prefix.

    When ``owner_prefix`` is set, :meth:`cache` refuses to overwrite the
    owner's authoritative log with server-fetched data.
    """

    def __init__(self, owner_prefix: str | None = None) -> None:
        self._owner_prefix = owner_prefix

    @property
    def owner_prefix(self) -> str | None:
        """Prefix of the log this store treats as authoritative, if any."""
        return self._owner_prefix

    @owner_prefix.setter
    def owner_prefix(self, prefix: str | None) -> None:
        self._owner_prefix = prefix

    @abstractmethod
    async def load(self, prefix: str) -> list[SignedKeyEvent] | None:
        """Return the log for ``prefix``, or ``None`` if there is none."""

    @abstractmethod
    async def save(self, events: Sequence[SignedKeyEvent]) -> None:
        """Save a log, replacing any existing log with the same prefix."""

    @abstractmethod
    async def delete(self, prefix: str) -> None:
        """Delete the log for ``prefix``; does nothing if it is absent."""

    async def cache(self, events: Sequence[SignedKeyEvent]) -> None:
        """Save a server-fetched log unless it belongs to the owner."""
        owner = self.owner_prefix
        if owner is not None and _prefix_of(events) == owner:
            return
        await self.save(events)

    @abstractmethod
    async def save_owner_tail(self, prefix: str, said: str) -> None:
        """Remember the SAID of the owner's latest event for ``prefix``."""

    @abstractmethod
    async def load_owner_tail(self, prefix: str) -> str | None:
        """Return the remembered owner tail SAID for ``prefix``."""


class MemoryKelStore(KelStore):
    """A :class:`KelStore` kept in memory."""

    def __init__(self, owner_prefix: str | None = None) -> None:
        super().__init__(owner_prefix)
        self._kels: dict[str, list[SignedKeyEvent]] = {}
        self._tails: dict[str, str] = {}

    async def load(self, prefix: str) -> list[SignedKeyEvent] | None:
        events = self._kels.get(prefix)
        return None if events is None else list(events)

    async def save(self, events: Sequence[SignedKeyEvent]) -> None:
        prefix = _prefix_of(events)
        if prefix is None:
            raise KelsError("Cannot save an empty KEL")
        self._kels[prefix] = list(events)

    async def delete(self, prefix: str) -> None:
        self._kels.pop(prefix, None)

    async def save_owner_tail(self, prefix: str, said: str) -> None:
        self._tails[prefix] = said

    async def load_owner_tail(self, prefix: str) -> str | None:
        return self._tails.get(prefix)