"""authcore - authentication and token lifecycle core."""

__version__ = "0.1.0"
