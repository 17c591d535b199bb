"""
Relay Package

Development realtime relay (FastAPI) used to exercise clients locally.
"""

from .server import RelayConnectionManager, create_relay_app, run

__all__ = [
    "RelayConnectionManager",
    "create_relay_app",
    "run",
]
