"""Signaling relay and peer-connection lifecycle for a peer-to-peer video mesh."""

__version__ = "0.1.0"
