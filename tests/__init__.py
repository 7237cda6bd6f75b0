"""Tests for the search subsystem.

Unit tests run against in-memory fakes of the store, entity source and
embedding provider (see ``conftest.py``). Tests under ``integration/`` need
a PostgreSQL with pgvector and are skipped when it is unreachable.
"""
