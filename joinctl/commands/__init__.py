from . import agent, channel, config, server
from .cluster import cluster_app

__all__ = ['agent', 'channel', 'config', 'server', 'cluster_app']
