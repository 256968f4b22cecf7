"""
HTTP management API and WebSocket endpoint.

Usage:
    python -m gesturevision --port 9001
"""

from .server import APIServer

__all__ = ["APIServer"]
