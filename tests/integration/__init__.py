"""Integration tests requiring a live PostgreSQL."""
