"""
notegraph query subsystem.

Two query languages share one pipeline of parse -> plan -> execute:

- Unified queries filter, sort and paginate the nodes of one tag (or all
  content nodes). They arrive as structured requests (build_ast), as
  text (parse_query_string), or from saved YAML definitions.
- Graph queries walk typed edges from a start set (parse_graph_query).

Aggregate queries extend unified queries with grouping. Planners
validate names against a schema catalog snapshot and suggest close
matches for typos.

Example usage:

    from notegraph.db import Database
    from notegraph.query import QueryService

    service = QueryService(Database("notes.db", read_only=True))

    result = service.query({
        "find": "task",
        "where": {"Status": {"neq": "Done"}, "created": {"after": "30d"}},
        "orderBy": "-created",
        "limit": 20,
    })
    for row in result:
        print(row["name"])

    stats = service.aggregate({"find": "task", "groupBy": "Status", "showPercent": True})

    people = service.graph(
        "FIND meeting WHERE created > 7d CONNECTED TO person VIA Attendees "
        "RETURN name, person.name"
    )
"""

# AST
from .ast import (
    Operator,
    RelativeDate,
    WhereClause,
    WhereGroup,
    OrderBy,
    QueryAST,
    GroupBySpec,
    AggregateFunction,
    AggregateAST,
    WILDCARD,
    NONE_GROUP_KEY,
)
from .graph_ast import (
    GraphAST,
    NodePredicate,
    TraversalStep,
    ReturnItem,
)

# Errors
from .errors import (
    QueryError,
    GraphParseError,
    QueryParseError,
    PlanError,
    RegistryError,
)

# Parsing
from .builder import build_ast, build_aggregate_ast, parse_group_by
from .text_parser import parse_query_string
from .graph_parser import parse_graph_query
from .dates import resolve_relative_date

# Planning
from .planner import (
    QueryPlanner,
    GraphQueryPlanner,
    QueryPlan,
    AggregatePlan,
    GraphPlan,
    format_explain,
)

# Execution
from .executor import QueryExecutor
from .graph_executor import GraphQueryExecutor
from .aggregation import AggregationService, bucket_label
from .results import QueryResult, GraphQueryResult, AggregateResult

# Saved queries and facade
from .registry import QueryRegistry, SavedQuery
from .service import QueryService

__all__ = [
    # AST
    'Operator',
    'RelativeDate',
    'WhereClause',
    'WhereGroup',
    'OrderBy',
    'QueryAST',
    'GroupBySpec',
    'AggregateFunction',
    'AggregateAST',
    'WILDCARD',
    'NONE_GROUP_KEY',
    'GraphAST',
    'NodePredicate',
    'TraversalStep',
    'ReturnItem',

    # Errors
    'QueryError',
    'GraphParseError',
    'QueryParseError',
    'PlanError',
    'RegistryError',

    # Parsing
    'build_ast',
    'build_aggregate_ast',
    'parse_group_by',
    'parse_query_string',
    'parse_graph_query',
    'resolve_relative_date',

    # Planning
    'QueryPlanner',
    'GraphQueryPlanner',
    'QueryPlan',
    'AggregatePlan',
    'GraphPlan',
    'format_explain',

    # Execution
    'QueryExecutor',
    'GraphQueryExecutor',
    'AggregationService',
    'bucket_label',
    'QueryResult',
    'GraphQueryResult',
    'AggregateResult',

    # Saved queries
    'QueryRegistry',
    'SavedQuery',
    'QueryService',
]
