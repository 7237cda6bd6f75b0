"""Bridges ``ats.entity.changed.v1`` events to the reindexer.

Entity modules running in other processes publish change events on Redis
(``EventPublisher.publish_entity_changed``); this listener forwards each one
to ``Reindexer.on_entity_changed``.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from ..common.events import EventSubscriber, EventType
from .reindexer import Reindexer

logger = structlog.get_logger("indexer.listener")


class EntityChangeListener:
    """Runs an ``EventSubscriber`` in the background with restart on failure."""

    def __init__(
        self,
        reindexer: Reindexer,
        subscriber: EventSubscriber,
        max_retries: int = 5,
        base_delay: float = 1.0
    ):
        self.reindexer = reindexer
        self.subscriber = subscriber
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._task: Optional[asyncio.Task] = None
        self.subscriber.subscribe(EventType.ENTITY_CHANGED, self.handle_entity_changed)

    def handle_entity_changed(self, event_data: Dict[str, Any]) -> None:
        """Validate an event payload and enqueue the reindex trigger."""
        source_type = event_data.get("source_type")
        source_id = event_data.get("source_id")
        if not source_type or source_id in (None, ""):
            logger.warning("Malformed entity change event, skipping", payload=event_data)
            return

        changed_fields = event_data.get("changed_fields")
        if changed_fields is not None and not isinstance(changed_fields, list):
            changed_fields = None

        self.reindexer.on_entity_changed(
            source_type,
            source_id,
            event_data.get("reason") or "update",
            changed_fields
        )

    def start(self) -> None:
        """Start listening in a background task (idempotent)."""
        if self._task and not self._task.done():
            logger.info("Entity change listener already running")
            return
        self._task = asyncio.create_task(self._run_with_retry())
        logger.info("Entity change listener started")

    async def _run_with_retry(self) -> None:
        for attempt in range(self.max_retries):
            try:
                await self.subscriber.start_listening()
                break
            except asyncio.CancelledError:
                logger.info("Entity change listener cancelled")
                raise
            except Exception as e:
                if attempt == self.max_retries - 1:
                    logger.error("Entity change listener failed after all retries", error=str(e))
                    break

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "Entity change listener failed, retrying",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        try:
            await self.subscriber.close()
        except Exception as e:
            logger.warning("Error closing event subscriber", error=str(e))
        logger.info("Entity change listener stopped")
