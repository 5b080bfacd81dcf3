"""License code activation server."""

__version__ = "0.1.0"
