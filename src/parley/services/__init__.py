# src/parley/services/__init__.py
"""Messaging services: local state, reconciliation and store adapters."""
