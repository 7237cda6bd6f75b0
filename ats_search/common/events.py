"""Entity change notifications carried over Redis pub/sub.

Modules that own candidates, jobs and applications publish an
``EntityChangedEvent`` once their write has committed. The search service
subscribes to the same channel and hands each payload to the reindexer.
Channel names are ``{prefix}:{event_type}`` and payloads are plain JSON so
publishers need not be written in Python.
"""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import redis
import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")

EventHandler = Callable[[Dict[str, Any]], None]


class EventType(Enum):
    ENTITY_CHANGED = "ats.entity.changed.v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(raw: Union[bytes, bytearray, str, None]) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8")
    return str(raw)


@dataclass
class BaseEvent:
    timestamp: int
    event_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class EntityChangedEvent(BaseEvent):
    """A candidate, job or application row was created, updated or deleted.

    ``event_type`` is always overwritten with the versioned identifier and a
    zero ``timestamp`` is replaced with the current time in milliseconds.
    """
    source_type: str
    source_id: str
    reason: str
    changed_fields: Optional[List[str]] = field(default=None)

    def __post_init__(self):
        self.event_type = EventType.ENTITY_CHANGED.value
        self.timestamp = self.timestamp or _now_ms()


class EventPublisher:
    """Synchronous publisher for CRUD code paths.

    A failed publish is logged and re-raised; the caller decides whether the
    write should be reported as partially failed. The search service does not
    depend on delivery since a full reindex repairs any missed change.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "ats_events"):
        self.redis_client = redis.from_url(redis_url)
        self.channel_prefix = channel_prefix

    def channel_for(self, event_type: str) -> str:
        return f"{self.channel_prefix}:{event_type}"

    def publish(self, event: BaseEvent) -> int:
        """Publish ``event`` and return the number of receiving subscribers."""
        channel = self.channel_for(event.event_type)
        try:
            receivers = self.redis_client.publish(channel, event.to_json())
        except redis.RedisError as e:
            logger.error("Event publish failed", channel=channel, error=str(e))
            raise
        logger.debug("Event published", channel=channel, receivers=receivers)
        return receivers

    def publish_entity_changed(
        self,
        source_type: str,
        source_id: Any,
        reason: str,
        changed_fields: Optional[List[str]] = None
    ) -> int:
        return self.publish(EntityChangedEvent(
            timestamp=_now_ms(),
            event_type=EventType.ENTITY_CHANGED.value,
            source_type=str(source_type),
            source_id=str(source_id),
            reason=str(reason),
            changed_fields=changed_fields,
        ))


class EventSubscriber:
    """Async subscriber that routes messages to handlers by event type.

    ``handlers`` maps an event type value to its handlers in registration
    order. A handler that raises is logged and skipped; the remaining
    handlers still see the payload.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "ats_events"):
        self.redis_client = redis_async.from_url(redis_url, decode_responses=False)
        self.channel_prefix = channel_prefix
        self.handlers: Dict[str, List[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self.handlers.setdefault(event_type.value, []).append(handler)
        logger.info("Handler registered", event_type=event_type.value, handler=_handler_name(handler))

    async def start_listening(self) -> None:
        """Consume messages until cancelled or the connection drops.

        Connection errors propagate so the owner can back off and restart.
        """
        channels = [f"{self.channel_prefix}:{event_type}" for event_type in self.handlers]
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(*channels)
        logger.info("Listening for events", channels=channels)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    self.handle_message(message)
        finally:
            await pubsub.aclose()
            logger.info("Event listener stopped")

    def handle_message(self, message: Dict[str, Any]) -> None:
        event_type = _text(message.get("channel")).rsplit(":", 1)[-1]
        try:
            payload = json.loads(_text(message.get("data")))
        except ValueError as e:
            logger.error("Undecodable event payload", event_type=event_type, error=str(e))
            return

        handlers = self.handlers.get(event_type)
        if not handlers:
            logger.warning("No handlers for event type", event_type=event_type)
            return

        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event_type,
                    handler=_handler_name(handler),
                    error=str(e)
                )

    async def close(self) -> None:
        await self.redis_client.aclose()


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))


def create_event_subscriber(redis_url: str, channel_prefix: str = "ats_events") -> EventSubscriber:
    return EventSubscriber(redis_url, channel_prefix=channel_prefix)
