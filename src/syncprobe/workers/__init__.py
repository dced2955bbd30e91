"""Tenant sync clients, one class per transport."""

from syncprobe.workers._base import DisconnectSignal, SyncWorker, TransportKind, WorkerState
from syncprobe.workers.duplex import DuplexWorker
from syncprobe.workers.stream import StreamWorker, merge_stream_event

__all__ = [
    "DisconnectSignal",
    "DuplexWorker",
    "StreamWorker",
    "SyncWorker",
    "TransportKind",
    "WorkerState",
    "merge_stream_event",
]
