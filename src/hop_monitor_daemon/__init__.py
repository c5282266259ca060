"""Connectivity monitor that probes network hops and logs outages to CSV."""

__version__ = "1.0.0"
