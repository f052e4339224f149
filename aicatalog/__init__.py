"""AI Catalog - captures user turns from a live conversation tree."""

__version__ = "0.1.0"
