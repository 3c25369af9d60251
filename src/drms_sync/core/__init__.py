"""Core infrastructure: local database."""
