"""Routing core for relaying messages between chat networks through gateways."""

__version__ = "1.25.2.dev0"