"""Snapshot files, master-side replication and a Sentinel-style failover monitor and server."""

__version__ = "0.1.0"