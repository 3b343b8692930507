"""joinctl - K3S cluster-join token handshake."""

__version__ = "0.1.0"
