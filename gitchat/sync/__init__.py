"""Replication of the shared chat log between participants.

The log is a plain text file in a git working copy. RemoteSync pulls and
pushes it over a Transport, and ReconciliationLoop surfaces each new entry
to the presenter exactly once.
"""

from .cursor import InvariantViolation, ViewCursor
from .reconcile import ReconciliationLoop
from .remote import RemoteSync, SyncOutcome, SyncResult
from .transport import (
    GitTransport,
    IntegrationConflict,
    MemoryRemote,
    MemoryTransport,
    PublishRejected,
    Transport,
    TransportError,
)

__all__ = [
    "GitTransport",
    "IntegrationConflict",
    "InvariantViolation",
    "MemoryRemote",
    "MemoryTransport",
    "PublishRejected",
    "ReconciliationLoop",
    "RemoteSync",
    "SyncOutcome",
    "SyncResult",
    "Transport",
    "TransportError",
    "ViewCursor",
]
