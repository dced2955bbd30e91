"""syncprobe - Write-propagation probe for multi-tenant realtime stores."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("syncprobe")
except PackageNotFoundError:
    __version__ = "0+local"
from syncprobe.config import Mode, ProbeConfig
from syncprobe.exceptions import (
    ConfigError,
    DeliveryTimeoutError,
    NoDataError,
    NoEntitiesError,
    StoreAuthError,
    StoreError,
    SyncProbeError,
    TransportError,
    WorkerError,
    WriteError,
)
from syncprobe.memory import MemoryStore
from syncprobe.models import (
    DeliveryResult,
    EntityKind,
    EntityRecord,
    PoolReport,
    TickResult,
)
from syncprobe.orchestrator import OrchestratorState, TestOrchestrator
from syncprobe.pool import WorkerPool
from syncprobe.retry import poll_until
from syncprobe.runtime import ProbeRuntime
from syncprobe.topology import SubscriptionTopology, TopologyDiff
from syncprobe.workers import DuplexWorker, StreamWorker, SyncWorker, TransportKind, WorkerState

__all__ = [
    "__version__",
    "ConfigError",
    "DeliveryResult",
    "DeliveryTimeoutError",
    "DuplexWorker",
    "EntityKind",
    "EntityRecord",
    "MemoryStore",
    "Mode",
    "NoDataError",
    "NoEntitiesError",
    "OrchestratorState",
    "PoolReport",
    "ProbeConfig",
    "ProbeRuntime",
    "StoreAuthError",
    "StoreError",
    "StreamWorker",
    "SubscriptionTopology",
    "SyncProbeError",
    "SyncWorker",
    "TestOrchestrator",
    "TickResult",
    "TopologyDiff",
    "TransportError",
    "TransportKind",
    "WorkerError",
    "WorkerPool",
    "WorkerState",
    "WriteError",
    "poll_until",
]
