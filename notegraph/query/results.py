"""
Result types for notegraph queries.

Result Types:
- QueryResult: projected rows of a unified query plus pagination info
- GraphQueryResult: the same shape plus columns and traversal metadata
- AggregateResult: grouped counts/aggregates with optional percentages
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

# A group's value: a count, a dict of aggregate outputs, or a nested grouping
GroupValue = Union[int, Dict[str, Any]]


@dataclass
class QueryResult:
    """
    Rows of a unified query.

    ``count`` is the number of matches ignoring pagination; ``has_more``
    is true iff matches exist beyond offset + limit.
    """
    results: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0
    has_more: bool = False

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.results)

    def __getitem__(self, idx):
        return self.results[idx]

    def ids(self) -> List[str]:
        return [row.get("id") for row in self.results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.results,
            "count": self.count,
            "hasMore": self.has_more,
        }


@dataclass
class GraphQueryResult(QueryResult):
    """
    Rows of a graph query.

    ``truncated`` is set when the traversal hit its node budget.
    ``paths`` maps each returned node id to its hop distance from the
    start set (only when requested).
    """
    columns: List[str] = field(default_factory=list)
    truncated: bool = False
    paths: Optional[Dict[str, int]] = None
    scores: Optional[Dict[str, float]] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["columns"] = self.columns
        data["truncated"] = self.truncated
        if self.paths is not None:
            data["paths"] = self.paths
        if self.scores is not None:
            data["scores"] = self.scores
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass
class AggregateResult:
    """
    Grouped aggregation.

    ``total`` counts every matching node even when groups were truncated;
    ``group_count`` is the number of groups returned.
    """
    total: int = 0
    group_count: int = 0
    groups: Dict[str, GroupValue] = field(default_factory=dict)
    percentages: Optional[Dict[str, float]] = None
    warning: Optional[str] = None

    def __len__(self) -> int:
        return len(self.groups)

    def __iter__(self):
        return iter(self.groups.items())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total": self.total,
            "groupCount": self.group_count,
            "groups": self.groups,
        }
        if self.percentages is not None:
            data["percentages"] = self.percentages
        if self.warning:
            data["warning"] = self.warning
        return data
