# src/bavard/__init__.py
"""BAVARD real-time messaging service."""
