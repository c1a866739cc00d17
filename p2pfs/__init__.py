"""Peer-to-peer file sharing over a local network: discovery, transfers, logs and a window."""

__version__ = "0.1.0"