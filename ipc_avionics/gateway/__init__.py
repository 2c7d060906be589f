"""
IPC Gateway - websocket and HTTP layer.

This package exposes the scheduler to clients:
- Websocket event protocol (auth, accion, interrumpir)
- Status and health endpoints
- Prometheus scrape endpoint

The gateway knows nothing about scheduling internals. It translates
client events into dispatcher calls and outcomes back into replies.
"""

__version__ = "1.0.0"
