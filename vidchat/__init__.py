"""Video-understanding chat over two providers with failover."""

__version__ = "0.3.0"
