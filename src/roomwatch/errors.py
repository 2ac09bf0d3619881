"""Exception hierarchy shared across roomwatch components."""

from __future__ import annotations


class RoomwatchError(Exception):
    """Base class for all roomwatch errors."""


class CacheNotInitializedError(RoomwatchError, RuntimeError):
    """Raised when the account cache is read before ``initialize()`` completes."""


class DatabaseError(RoomwatchError):
    """Base class for remote relational store failures."""


class DatabaseInitError(DatabaseError):
    """Raised when the pool (or the tunnel in front of it) cannot be established."""


class DatabaseNotInitializedError(DatabaseError, RuntimeError):
    """Raised when a query is attempted before ``initialize()`` succeeded."""


class TunnelError(RoomwatchError):
    """Raised when the SSH control channel or local forwarder cannot be opened."""


class DuplicateAccountError(RoomwatchError):
    """Raised when an account with the same (organization_id, login_name) exists."""


class AccountNotFoundError(RoomwatchError, KeyError):
    """Raised when a mutation targets an account id that does not exist."""
