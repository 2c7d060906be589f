"""IPC Avionics - Infrastructure Layer.

Provides the infrastructure around the control tower kernel:
- Settings (pydantic-settings, environment driven)
- Token signing and verification
- Prometheus metrics
- Websocket/HTTP gateway
"""
