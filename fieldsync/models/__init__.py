from .route_graph import Area, Street, Route, Residence, Client
from .reading import Reading, SyncStatus
from .sync_metadata import SyncStateEntry, SyncRun

__all__ = [
    'Area',
    'Street',
    'Route',
    'Residence',
    'Client',
    'Reading',
    'SyncStatus',
    'SyncStateEntry',
    'SyncRun',
]
