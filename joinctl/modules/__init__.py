"""
Cluster join handshake modules.
"""
from .ssh import ConnectionPool, get_ssh_pool

__all__ = [
    'ConnectionPool',
    'get_ssh_pool',
]
