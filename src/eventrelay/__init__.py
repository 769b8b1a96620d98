"""Command-line entry points for the eventrelay services."""

__version__ = "0.1.0"
