"""syncabull - keeps a local, deduplicated backup of a Google Photos library."""

__version__ = "0.1.0"
