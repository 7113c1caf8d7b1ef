"""Cluster provisioning controller."""

__version__ = "0.1.0"
