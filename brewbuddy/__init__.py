"""
Backend package for the BrewBuddy coffee tracker.

This package provides a FastAPI application with token/device
authentication, a per-user coffee collection behind a storage
abstraction, and a proxy to an AI vision service for reading coffee bags.
"""

__version__ = "5.2.0"
