"""Exceptions raised by the relay core."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for failures that abort a forwarding run."""


class SourceQueryError(RelayError):
    """The message source could not be read."""


class StorageError(RelayError):
    """The settings or ledger store could not be read or written."""
