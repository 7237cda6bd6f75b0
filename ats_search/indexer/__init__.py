"""Synchronization of source entities into the search index."""

from .listener import EntityChangeListener
from .projectors import Projection, ProjectorRegistry, default_registry
from .reindexer import Reindexer
from .sources import EntitySource, PostgresEntitySource

__all__ = [
    "EntityChangeListener",
    "EntitySource",
    "PostgresEntitySource",
    "Projection",
    "ProjectorRegistry",
    "Reindexer",
    "default_registry",
]
