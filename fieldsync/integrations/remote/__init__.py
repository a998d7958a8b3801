"""
Remote backend clients.
"""

from .base import RemoteStore
from .http_client import RestRemoteStore, error_for_status

__all__ = [
    'RemoteStore',
    'RestRemoteStore',
    'error_for_status',
]
