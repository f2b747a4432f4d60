# src/parley/db/__init__.py
"""Database configuration and utilities for the bundled SQL store."""

from .session import Base, SessionLocal, create_tables

__all__ = ["Base", "SessionLocal", "create_tables"]
