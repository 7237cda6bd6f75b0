"""Search store factory.

Centralizes creation of the concrete ``SearchDocumentStore`` so entrypoints
and scripts don't depend on implementation details.
"""

from enum import Enum
from typing import Any, Optional

import structlog

from ..capability import DegradationController
from ..common.config import BaseConfig
from ..common.metrics import MetricsCollector
from .base import SearchDocumentStore
from .pgvector import PgSearchDocumentStore

logger = structlog.get_logger("search_store.factory")


class SearchStoreType(Enum):
    """Supported search store backends."""
    PGVECTOR = "pgvector"


def create_search_store(
    config: BaseConfig,
    controller: DegradationController,
    store_type: str = "pgvector",
    metrics: Optional[MetricsCollector] = None,
    **kwargs: Any
) -> SearchDocumentStore:
    """Create a search document store from configuration.

    Parameters
    - config: Any ``BaseConfig``; ``SearchConfig`` subclasses also provide the
      text search configuration
    - controller: Degradation controller shared with the rest of the process
    - store_type: Backend name (``pgvector``)
    - kwargs: Overrides forwarded to the implementation
    """
    try:
        store_type_enum = SearchStoreType(store_type)
    except ValueError:
        raise ValueError(f"Unsupported search store type: {store_type}")

    if store_type_enum == SearchStoreType.PGVECTOR:
        if not config.ats_db_dsn:
            raise ValueError("pgvector store requires ats_db_dsn")

        options = {
            "vector_dimension": config.ats_vector_dimension,
            "pool_size": config.ats_db_pool_size,
            "command_timeout": config.ats_db_command_timeout,
            "text_config": getattr(config, "ats_search_text_config", "simple"),
        }
        options.update(kwargs)

        logger.info(
            "Creating search store",
            store_type=store_type_enum.value,
            vector_dimension=options["vector_dimension"]
        )
        return PgSearchDocumentStore(
            dsn=config.ats_db_dsn,
            controller=controller,
            metrics=metrics,
            **options
        )

    raise ValueError(f"Unsupported search store type: {store_type}")
