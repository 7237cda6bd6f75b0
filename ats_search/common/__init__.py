"""Common utilities shared across the search components.

Includes:
- ``config``: Pydantic-based configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``events``: Redis pub/sub entity change events.

Import pattern:
- from ats_search.common.config import ServiceConfig
- from ats_search.common.logging import configure_logging
"""
