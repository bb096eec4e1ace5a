"""同步引擎."""

from readersync.core.batch import BatchProcessor, BatchResult
from readersync.core.greader import GReaderClient, GReaderConfig
from readersync.core.progress import ProgressTracker
from readersync.core.queue import ChangeQueue
from readersync.core.sync import SyncService
from readersync.core.uplink import UplinkCoordinator
from readersync.core.usage import UsageGuard

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "ChangeQueue",
    "GReaderClient",
    "GReaderConfig",
    "ProgressTracker",
    "SyncService",
    "UplinkCoordinator",
    "UsageGuard",
]
