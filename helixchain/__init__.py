"""Blockchain node components: governance, wire messages, peer connections, logging and metrics."""

__version__ = "1.0.0"