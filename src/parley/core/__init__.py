"""Core configuration for Parley."""
