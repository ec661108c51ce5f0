"""
Query service facade.

One entry point per query kind, each running parse -> plan -> execute
against a single catalog snapshot:

    service = QueryService(db)
    service.query({"find": "task", "where": {"Status": "Done"}})
    service.query("find task where Status = Done order by -created")
    service.aggregate({"find": "task", "groupBy": "Status", "showPercent": True})
    service.graph("FIND task -> Assignee TO person RETURN name, person.name")
    print(service.explain_graph("FIND task -> Assignee TO person"))

Errors from any phase propagate to the caller unchanged.
"""
import logging
from typing import Any, Mapping, Optional, Union, TYPE_CHECKING

from notegraph.config import NotegraphConfig, get_config
from notegraph.schema import SchemaCatalog
from notegraph.scoring import EmbeddingLookup

from .aggregation import AggregationService
from .ast import QueryAST, AggregateAST
from .builder import build_ast, build_aggregate_ast
from .dates import Clock, utcnow
from .executor import QueryExecutor
from .graph_ast import GraphAST
from .graph_executor import GraphQueryExecutor
from .graph_parser import parse_graph_query
from .planner import QueryPlanner, GraphQueryPlanner, QueryPlan, GraphPlan, format_explain
from .registry import QueryRegistry, KIND_AGGREGATE, KIND_GRAPH
from .results import QueryResult, GraphQueryResult, AggregateResult
from .text_parser import parse_query_string

if TYPE_CHECKING:
    from notegraph.db import Database

logger = logging.getLogger(__name__)

UnifiedInput = Union[str, Mapping[str, Any], QueryAST]
AggregateInput = Union[Mapping[str, Any], AggregateAST]
GraphInput = Union[str, GraphAST]


def to_query_ast(query: UnifiedInput) -> QueryAST:
    if isinstance(query, QueryAST):
        return query
    if isinstance(query, str):
        return parse_query_string(query)
    return build_ast(query)


def to_aggregate_ast(query: AggregateInput) -> AggregateAST:
    if isinstance(query, AggregateAST):
        return query
    return build_aggregate_ast(query)


def to_graph_ast(query: GraphInput) -> GraphAST:
    if isinstance(query, GraphAST):
        return query
    return parse_graph_query(query)


class QueryService:
    """
    Parse, plan and execute queries against one database.

    Args:
        db: Database to query
        config: Settings (defaults to the global configuration)
        clock: Current-time source (naive UTC)
        embeddings: Optional embedding lookup for semantic ranking
        catalog: Shared schema catalog; one is created if omitted
    """

    def __init__(self, db: "Database", config: Optional[NotegraphConfig] = None,
                 clock: Optional[Clock] = None,
                 embeddings: Optional[EmbeddingLookup] = None,
                 catalog: Optional[SchemaCatalog] = None):
        self.db = db
        self.config = config or get_config()
        self.clock = clock or utcnow
        self.catalog = catalog or SchemaCatalog(db)

        self.executor = QueryExecutor(db, clock=self.clock)
        self.aggregator = AggregationService(db, clock=self.clock)
        self.graph_executor = GraphQueryExecutor(
            db, clock=self.clock, embeddings=embeddings,
            half_life_days=self.config.recency_half_life_days,
        )

    def invalidate_catalog(self) -> None:
        """Drop cached schema metadata after the store was re-synced."""
        self.catalog.invalidate()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, query: UnifiedInput) -> QueryPlan:
        return QueryPlanner(self.catalog.snapshot(), self.config).plan(to_query_ast(query))

    def plan_aggregate(self, query: AggregateInput):
        return QueryPlanner(self.catalog.snapshot(), self.config).plan_aggregate(
            to_aggregate_ast(query))

    def plan_graph(self, query: GraphInput) -> GraphPlan:
        return GraphQueryPlanner(self.catalog.snapshot(), self.config).plan(to_graph_ast(query))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def query(self, query: UnifiedInput, limit: Optional[int] = None,
              resolve_references: bool = False) -> QueryResult:
        """Run a unified query (structured request, text, or QueryAST)."""
        return self.executor.execute(self.plan(query), limit=limit,
                                     resolve_references=resolve_references)

    def aggregate(self, query: AggregateInput) -> AggregateResult:
        """Run an aggregate query."""
        return self.aggregator.aggregate(self.plan_aggregate(query))

    def graph(self, query: GraphInput, limit: Optional[int] = None,
              include_paths: bool = False, rank: bool = False,
              rank_text: Optional[str] = None,
              resolve_references: bool = False) -> GraphQueryResult:
        """Run a graph query (DSL text or GraphAST)."""
        return self.graph_executor.execute(
            self.plan_graph(query), limit=limit, include_paths=include_paths,
            rank=rank, rank_text=rank_text, resolve_references=resolve_references,
        )

    def run_saved(self, registry: QueryRegistry, name: str, **options):
        """Run a saved query by name with the executor matching its kind."""
        saved = registry.get(name)
        logger.debug("Running saved %s query %r", saved.kind, name)
        if saved.kind == KIND_GRAPH:
            return self.graph(saved.ast, **options)
        if saved.kind == KIND_AGGREGATE:
            return self.aggregate(saved.ast)
        return self.query(saved.ast, **options)

    # ------------------------------------------------------------------
    # Explain
    # ------------------------------------------------------------------

    def explain(self, query: UnifiedInput) -> str:
        return format_explain(self.plan(query))

    def explain_aggregate(self, query: AggregateInput) -> str:
        return format_explain(self.plan_aggregate(query))

    def explain_graph(self, query: GraphInput) -> str:
        return format_explain(self.plan_graph(query))
