"""
notegraph - structured and graph queries over an exported note graph

Indexes of a hierarchical note export (nodes, supertags with inheritable
field schemas, typed field values, references) live in a relational
store; notegraph answers queries against it.

Example Usage:
    >>> from notegraph import Database, QueryService
    >>> service = QueryService(Database("notes.db", read_only=True))
    >>> service.query("find task where Status != Done order by -created limit 10")
    >>> service.aggregate({"find": "task", "groupBy": "Status,month"})
    >>> service.graph("FIND meeting CONNECTED TO person VIA Attendees RETURN name, person.name")
"""

import logging
from typing import Optional, Union

__version__ = "0.3.0"
__author__ = "notegraph Contributors"

# Core database API
from notegraph.db import Database, get_db

# Configuration
from notegraph.config import NotegraphConfig, get_config, init_config

# Models
from notegraph.models import Node, Supertag, FieldDefinition, FieldValue, Reference

# Schema and scoring
from notegraph.schema import SchemaCatalog, CatalogSnapshot, TagInfo, FieldInfo
from notegraph.scoring import score_node, score_and_sort

# Query facade
from notegraph.query import QueryService, QueryRegistry, QueryError, PlanError, GraphParseError


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Set the level of the ``notegraph`` logger hierarchy (default: config.log_level)."""
    if level is None:
        level = get_config().log_level
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger("notegraph").setLevel(level)


__all__ = [
    # Database
    "Database",
    "get_db",
    # Config
    "NotegraphConfig",
    "get_config",
    "init_config",
    "configure_logging",
    # Models
    "Node",
    "Supertag",
    "FieldDefinition",
    "FieldValue",
    "Reference",
    # Schema and scoring
    "SchemaCatalog",
    "CatalogSnapshot",
    "TagInfo",
    "FieldInfo",
    "score_node",
    "score_and_sort",
    # Queries
    "QueryService",
    "QueryRegistry",
    "QueryError",
    "PlanError",
    "GraphParseError",
]
