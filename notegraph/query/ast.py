"""
Query AST for notegraph.

A QueryAST is the language-independent form of a unified query: which
tag to find, how to filter, what to project, how to order and paginate.
AggregateAST extends it with grouping and aggregate functions. The
structured builder, the textual parser and the saved-query registry all
produce these objects; the planner consumes them.

Example:
    QueryAST(
        find="task",
        where=[
            WhereClause("Status", Operator.NEQ, "Done"),
            WhereGroup("or", [
                WhereClause("Priority", Operator.EQ, "High"),
                WhereClause("created", Operator.GT, RelativeDate("7d")),
            ]),
        ],
        order_by=OrderBy("created", desc=True),
        limit=20,
    )
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Union

WILDCARD = "*"
DEFAULT_LIMIT = 100
DEFAULT_OFFSET = 0

NONE_GROUP_KEY = "(none)"
TIME_PERIODS = ("day", "week", "month", "quarter", "year")
DATE_FIELDS = ("created", "updated")
AGGREGATE_FUNCTIONS = ("count", "sum", "avg", "min", "max")


# =============================================================================
# Operators
# =============================================================================

class Operator(Enum):
    """Comparison operators of a where clause."""
    EQ = "="
    NEQ = "!="
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    CONTAINS = "~"
    EXISTS = "exists"
    IN = "in"

    @classmethod
    def from_string(cls, s: str) -> "Operator":
        """Parse an operator symbol or keyword."""
        s = s.strip().lower()
        for op in cls:
            if op.value == s:
                return op
        raise ValueError(f"Unknown operator: {s}")

    @property
    def is_range(self) -> bool:
        return self in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE)


# =============================================================================
# Values
# =============================================================================

@dataclass(frozen=True)
class RelativeDate:
    """
    A relative date token (today, yesterday, 7d, 2w, 3m, 1y).

    Resolved against the execution-time clock, never at build time.
    """
    token: str

    def __str__(self):
        return self.token


ClauseValue = Union[str, int, float, bool, List[str], RelativeDate, None]


# =============================================================================
# Where Clauses
# =============================================================================

@dataclass
class WhereClause:
    """
    A single condition on a field.

    ``field`` is either a reserved node attribute (name, created,
    updated, id) or a field name resolved against the target tag.
    """
    field: str
    operator: Operator
    value: Any = None
    negated: bool = False

    def __repr__(self):
        prefix = "NOT " if self.negated else ""
        return f"WhereClause({prefix}{self.field} {self.operator.value} {self.value!r})"


@dataclass
class WhereGroup:
    """Clauses or nested groups combined with 'and' or 'or'."""
    op: str
    items: List["WhereNode"] = field(default_factory=list)
    negated: bool = False

    def __post_init__(self):
        self.op = self.op.lower()
        if self.op not in ("and", "or"):
            raise ValueError(f"Unknown group operator: {self.op}")

    def __repr__(self):
        prefix = "NOT " if self.negated else ""
        return f"WhereGroup({prefix}{self.op}, {self.items!r})"


WhereNode = Union[WhereClause, WhereGroup]


def iter_clauses(nodes: List[WhereNode]):
    """Yield every clause of a where tree, depth first."""
    for node in nodes:
        if isinstance(node, WhereGroup):
            yield from iter_clauses(node.items)
        else:
            yield node


# =============================================================================
# Ordering
# =============================================================================

@dataclass
class OrderBy:
    field: str
    desc: bool = False

    @classmethod
    def parse(cls, s: str) -> "OrderBy":
        """Parse '-created' (descending) or 'name' / 'name desc'."""
        s = s.strip()
        if s.startswith("-"):
            return cls(field=s[1:].strip(), desc=True)
        parts = s.split()
        if len(parts) == 2 and parts[1].lower() in ("asc", "desc"):
            return cls(field=parts[0], desc=parts[1].lower() == "desc")
        return cls(field=s)

    def __repr__(self):
        return f"OrderBy({self.field} {'desc' if self.desc else 'asc'})"


# =============================================================================
# Query
# =============================================================================

@dataclass
class QueryAST:
    """A unified query: find, where, select, order by, limit, offset."""
    find: str = WILDCARD
    where: List[WhereNode] = field(default_factory=list)
    select: Optional[List[str]] = None
    order_by: Optional[OrderBy] = None
    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET

    # Input keys that were not understood and were dropped
    ignored_keys: List[str] = field(default_factory=list)

    @property
    def is_wildcard(self) -> bool:
        return self.find.strip() == WILDCARD

    def __repr__(self):
        parts = [f"find={self.find!r}"]
        if self.where:
            parts.append(f"where={self.where!r}")
        if self.select:
            parts.append(f"select={self.select!r}")
        if self.order_by:
            parts.append(f"order_by={self.order_by!r}")
        parts.append(f"limit={self.limit}")
        if self.offset:
            parts.append(f"offset={self.offset}")
        return f"QueryAST({', '.join(parts)})"


# =============================================================================
# Aggregation
# =============================================================================

@dataclass
class GroupBySpec:
    """
    One grouping level: by a field's value or by a time bucket.

    Examples:
        GroupBySpec(field="Status")
        GroupBySpec(period="month")                       # on created
        GroupBySpec(period="week", date_field="updated")
    """
    field: Optional[str] = None
    period: Optional[str] = None
    date_field: str = "created"

    @property
    def is_time(self) -> bool:
        return self.period is not None

    @property
    def label(self) -> str:
        if self.is_time:
            if self.date_field == "created":
                return self.period
            return f"{self.period}({self.date_field})"
        return self.field or ""

    def __repr__(self):
        return f"GroupBySpec({self.label})"


@dataclass
class AggregateFunction:
    """count, or sum/avg/min/max over a numeric field."""
    fn: str = "count"
    field: Optional[str] = None
    alias: Optional[str] = None

    @property
    def output_name(self) -> str:
        if self.alias:
            return self.alias
        if self.field:
            return f"{self.fn}_{self.field}"
        return self.fn

    def __repr__(self):
        if self.field:
            return f"AggregateFunction({self.fn}({self.field}))"
        return f"AggregateFunction({self.fn}())"


@dataclass
class AggregateAST(QueryAST):
    """A unified query plus grouping, aggregates, percentages and a group cap."""
    group_by: List[GroupBySpec] = field(default_factory=list)
    aggregate: List[AggregateFunction] = field(default_factory=list)
    show_percent: bool = False
    top: Optional[int] = None

    def __repr__(self):
        return (f"AggregateAST(find={self.find!r}, group_by={self.group_by!r}, "
                f"aggregate={self.aggregate!r}, top={self.top})")
