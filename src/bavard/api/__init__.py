# src/bavard/api/__init__.py
"""HTTP and WebSocket API for the BAVARD service."""
