"""Git-backed coordination of work units across lanes."""

__version__ = "0.1.0"
