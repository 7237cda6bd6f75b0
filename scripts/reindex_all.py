#!/usr/bin/env python3
"""Script to rebuild search documents for one or more source types.

Runs the reindexer in-process (no HTTP service needed). By default every
entity of each type is re-projected and re-embedded; ``--missing-only``
re-embeds only documents stored without a vector.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from ats_search.capability import DegradationController
from ats_search.common.config import ServiceConfig
from ats_search.common.logging import configure_logging
from ats_search.embeddings.client import EmbeddingClient
from ats_search.indexer.reindexer import Reindexer
from ats_search.indexer.sources import PostgresEntitySource
from ats_search.models import BatchResult, SourceType
from ats_search.search_store.factory import create_search_store

logger = structlog.get_logger("reindex_all")


async def reindex_entities(
    source_types: List[SourceType],
    missing_only: bool = False,
    config: Optional[ServiceConfig] = None
) -> bool:
    """Reindex the given source types; returns ``False`` if any item failed."""
    config = config or ServiceConfig()
    controller = DegradationController()
    embedding_client = EmbeddingClient.from_config(config)
    controller.probe(embedding_client)

    store = create_search_store(config, controller)
    source = PostgresEntitySource(config.source_dsn, config.ats_source_tables)
    reindexer = Reindexer(
        store,
        source,
        embedding_client,
        controller,
        batch_delay=config.ats_reindex_batch_delay,
    )

    total = BatchResult()
    try:
        for source_type in source_types:
            if missing_only:
                result = await reindexer.reindex_missing_embeddings(source_type)
            else:
                result = await reindexer.reindex_all(source_type)

            logger.info("Reindexed source type", source_type=source_type.value, **result.to_dict())
            total.processed += result.processed
            total.failed += result.failed
            total.lexical_only += result.lexical_only
            total.failures.extend(result.failures)
    finally:
        await embedding_client.close()
        await source.close()
        await store.close()

    logger.info(
        "Reindex finished",
        source_types=[t.value for t in source_types],
        processed=total.processed,
        failed=total.failed,
        lexical_only=total.lexical_only,
        vector_available=controller.vector_enabled
    )
    return total.failed == 0


def main():
    """Main function for CLI."""
    parser = argparse.ArgumentParser(description="Rebuild search documents from source entities")
    parser.add_argument(
        "--type",
        dest="source_types",
        action="append",
        choices=[t.value for t in SourceType],
        help="Source type to reindex (repeatable; default: all)"
    )
    parser.add_argument(
        "--missing-only",
        action="store_true",
        help="Only re-embed documents stored without a vector"
    )
    args = parser.parse_args()

    config = ServiceConfig()
    configure_logging("reindex_all", config.ats_log_level, config.ats_log_format)

    source_types = [SourceType(t) for t in args.source_types] if args.source_types else list(SourceType)
    success = asyncio.run(reindex_entities(source_types, args.missing_only, config))

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
