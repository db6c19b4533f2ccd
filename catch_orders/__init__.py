"""Order processing for a fresh fish delivery service."""

__version__ = "1.0.0"
