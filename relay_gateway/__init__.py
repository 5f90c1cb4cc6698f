"""
Relay Gateway - rendezvous broker for remote device control.

This module runs on the server machine and:
- Accepts WebSocket and long-polling sessions from devices and controllers
- Maps device identities to their live connections
- Forwards commands and broadcasts telemetry and frames
"""

__version__ = "1.0.0"
