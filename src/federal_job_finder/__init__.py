"""Offline job cache and synchronization for the USAJobs API."""

__version__ = "0.1.0"
