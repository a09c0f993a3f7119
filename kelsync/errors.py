"""Exceptions raised when handling key event logs."""

from __future__ import annotations


class KelsError(Exception):
    """Base class for key event log errors."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class InvalidKeyEvent(KelsError):
    """A key event is malformed or of an unknown kind."""


class KeyNotFound(KelsError):
    """No key event log exists for the requested prefix."""


class ContestedKel(KelsError):
    """The key event log has been contested and is frozen."""