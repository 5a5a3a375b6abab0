from .archive import ArchiveManager, ArchiveResult
from .connectivity import ConnectivityMonitor
from .engine import SyncEngine
from .realtime import RealtimeListener
from .views import ViewOptions

__all__ = [
    "ArchiveManager",
    "ArchiveResult",
    "ConnectivityMonitor",
    "RealtimeListener",
    "SyncEngine",
    "ViewOptions",
]
