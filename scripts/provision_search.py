#!/usr/bin/env python3
"""Provision the ``search_documents`` schema.

Idempotent: safe to run on every deploy. Exits 0 when the lexical schema is
in place; the vector part is best effort and reported in the log. Pass
``--require-vector`` to exit 2 when pgvector could not be provisioned.
"""

import argparse
import asyncio
import sys

import structlog

from ats_search.capability import DegradationController
from ats_search.common.config import BaseConfig
from ats_search.common.logging import configure_logging
from ats_search.errors import StorageError
from ats_search.search_store.factory import create_search_store

logger = structlog.get_logger("provision_search")


async def provision(config: BaseConfig) -> bool:
    """Provision the schema; returns whether the vector column is usable."""
    controller = DegradationController()
    store = create_search_store(config, controller)
    try:
        vector_available = await store.provision()
        stats = await store.get_index_stats()
    finally:
        await store.close()

    logger.info(
        "Provisioning complete",
        vector_available=vector_available,
        reason=controller.state.reason,
        documents=stats["total"],
        embedded=stats["embedded"]
    )
    return vector_available


def main():
    """Main function for CLI."""
    parser = argparse.ArgumentParser(description="Provision the search_documents schema")
    parser.add_argument(
        "--require-vector",
        action="store_true",
        help="Fail when the vector column cannot be provisioned"
    )
    args = parser.parse_args()

    config = BaseConfig()
    configure_logging("provision_search", config.ats_log_level, config.ats_log_format)

    try:
        vector_available = asyncio.run(provision(config))
    except StorageError as e:
        logger.error("Provisioning failed", error=str(e))
        sys.exit(1)

    if args.require_vector and not vector_available:
        sys.exit(2)
    sys.exit(0)


if __name__ == "__main__":
    main()
