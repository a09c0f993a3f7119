"""Key event log types, local storage and gossip synchronisation helpers."""

__version__ = "0.1.0"

__all__ = ["config", "errors", "gossip", "protocol", "store", "sync", "types"]