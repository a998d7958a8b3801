"""
Bidirectional synchronization between the local store and the remote backend.
"""

from .session import SyncKind, SyncOutcome, SyncResult, SyncSession
from .down_sync import DownSyncEngine
from .up_sync import UpSyncEngine
from .coordinator import SyncCoordinator

__all__ = [
    'SyncKind',
    'SyncOutcome',
    'SyncResult',
    'SyncSession',
    'DownSyncEngine',
    'UpSyncEngine',
    'SyncCoordinator',
]
