"""
Saved queries for notegraph.

Named unified, aggregate and graph queries loaded from YAML:

    open_tasks:
      description: "Tasks not done yet"
      find: task
      where: {Status: {neq: Done}}
      orderBy: -created

    recent_tasks:
      query: "find task where created > 7d order by -created"

    weekly_meetings:
      find: meeting
      groupBy: [week]

    people_at_meetings:
      graph: "FIND meeting CONNECTED TO person VIA Attendees RETURN name, person.name"

The kind is inferred: a ``graph`` key makes a graph query, ``groupBy``
an aggregate, anything else a unified query (``query`` holds its textual
form). Definitions are parsed when registered, so syntax errors surface
at load time.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .ast import QueryAST, AggregateAST
from .builder import build_ast, build_aggregate_ast
from .errors import RegistryError
from .graph_ast import GraphAST
from .graph_parser import parse_graph_query
from .text_parser import parse_query_string

KIND_UNIFIED = "unified"
KIND_AGGREGATE = "aggregate"
KIND_GRAPH = "graph"

_META_KEYS = ("description",)


@dataclass
class SavedQuery:
    name: str
    kind: str
    ast: Union[QueryAST, AggregateAST, GraphAST]
    description: Optional[str] = None
    source: Optional[Path] = None


def infer_kind(definition: Mapping[str, Any]) -> str:
    if "graph" in definition:
        return KIND_GRAPH
    if "groupBy" in definition or "group_by" in definition:
        return KIND_AGGREGATE
    return KIND_UNIFIED


def parse_definition(name: str, definition: Any, source: Optional[Path] = None) -> SavedQuery:
    """Parse one saved-query definition."""
    if isinstance(definition, str):
        definition = {"query": definition}
    if not isinstance(definition, Mapping):
        raise RegistryError(
            f"Query '{name}' must be a mapping or a query string, got {type(definition).__name__}"
        )

    kind = infer_kind(definition)
    description = definition.get("description")
    body = {k: v for k, v in definition.items() if k not in _META_KEYS}

    if kind == KIND_GRAPH:
        ast = parse_graph_query(str(body["graph"]))
    elif kind == KIND_AGGREGATE:
        ast = build_aggregate_ast(body)
    elif "query" in body:
        ast = parse_query_string(str(body["query"]))
    else:
        ast = build_ast(body)

    return SavedQuery(name=name, kind=kind, ast=ast, description=description, source=source)


class QueryRegistry:
    """
    Registry of named queries.

    Example:
        registry = QueryRegistry()
        registry.load_file("queries.yaml")
        saved = registry.get("open_tasks")
    """

    def __init__(self):
        self._queries: Dict[str, SavedQuery] = {}

    def register(self, saved: SavedQuery) -> None:
        self._queries[saved.name] = saved

    def get(self, name: str) -> SavedQuery:
        if name not in self._queries:
            raise RegistryError(f"Unknown saved query: {name}")
        return self._queries[name]

    def has(self, name: str) -> bool:
        return name in self._queries

    def names(self) -> List[str]:
        return sorted(self._queries)

    def load_file(self, path: Union[str, Path]) -> int:
        """
        Load queries from a YAML file.

        Returns number of queries loaded.
        """
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            return self._load(yaml.safe_load(f), source=path)

    def load_string(self, yaml_string: str) -> int:
        """
        Load queries from a YAML string.

        Returns number of queries loaded.
        """
        return self._load(yaml.safe_load(yaml_string))

    def _load(self, data: Any, source: Optional[Path] = None) -> int:
        if data is None:
            return 0
        if not isinstance(data, dict):
            raise RegistryError(f"YAML must contain a mapping of query names, got {type(data).__name__}")

        for name, definition in data.items():
            self.register(parse_definition(str(name), definition, source))
        return len(data)

    def clear(self) -> None:
        """Remove all registered queries."""
        self._queries.clear()
