# src/bavard/scripts/__init__.py
"""Operational scripts for the BAVARD service."""
