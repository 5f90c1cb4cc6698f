"""
Remote Device Client

Device agent and controller endpoints of the relay. Both keep a connection
to the gateway (HTTP long-polling upgraded to WebSocket) with automatic
reconnection.
"""

__version__ = "1.0.0"
