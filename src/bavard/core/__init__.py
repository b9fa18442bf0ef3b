# src/bavard/core/__init__.py
"""Core configuration, security and error types."""
