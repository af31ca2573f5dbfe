"""External integration synchronization engine."""

__version__ = "1.0.0"
