"""
Query execution engine for notegraph unified queries.

Turns a validated QueryPlan into SQL: tag membership and where-clauses
become one WHERE, ordering and pagination are pushed down, and only the
requested page is projected.

Ordering is a single field plus node id ascending as the tie-breaker, so
repeated executions return rows in the same order. Without an explicit
order, rows come newest first.
"""
import logging
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import select, func, and_, cast, Float
from sqlalchemy.sql.elements import ColumnElement

from notegraph.models import Node, FieldValue

from .dates import Clock, utcnow
from .fields import FieldResolver, DEFAULT_SELECT, FULL_SELECT
from .filters import FilterCompiler, tag_condition
from .planner import QueryPlan, ResolvedOrder
from .results import QueryResult

if TYPE_CHECKING:
    from notegraph.db import Database

logger = logging.getLogger(__name__)


def plan_condition(plan: QueryPlan, now: datetime) -> ColumnElement:
    """The full WHERE of a plan: tag membership AND its where-tree."""
    condition = tag_condition(plan.tag_ids)
    compiled = FilterCompiler(now).compile(plan.where)
    if compiled is not None:
        condition = and_(condition, compiled)
    return condition


def order_clauses(order: Optional[ResolvedOrder]) -> List:
    """ORDER BY for a resolved order, ending with id ascending."""
    if order is None:
        return [Node.created.is_(None), Node.created.desc(), Node.id.asc()]

    field = order.field
    if field.is_attribute:
        key = getattr(Node, field.attribute)
    else:
        value = FieldValue.value_text
        if field.is_number:
            value = cast(value, Float)
        key = (
            select(func.min(value))
            .where(FieldValue.parent_id == Node.id,
                   FieldValue.field_def_id.in_(list(field.label_ids)),
                   FieldValue.value_text != "")
            .correlate(Node)
            .scalar_subquery()
        )

    # Missing values sort last in both directions
    return [key.is_(None), key.desc() if order.desc else key.asc(), Node.id.asc()]


class QueryExecutor:
    """
    Executes unified query plans.

    Example:
        executor = QueryExecutor(db)
        result = executor.execute(plan)
        for row in result:
            print(row["name"])
    """

    def __init__(self, db: "Database", clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or utcnow

    def execute(self, plan: QueryPlan, limit: Optional[int] = None,
                resolve_references: bool = False) -> QueryResult:
        """
        Execute a plan.

        Args:
            plan: Validated plan
            limit: Overrides the plan's limit
            resolve_references: Return reference values as {"id", "name"}
        """
        limit = plan.limit if limit is None else limit
        condition = plan_condition(plan, self.clock())

        with self.db.read_session() as session:
            count = session.execute(
                select(func.count(Node.id)).where(condition)
            ).scalar() or 0

            stmt = (
                select(Node)
                .where(condition)
                .order_by(*order_clauses(plan.order_by))
                .limit(limit)
                .offset(plan.offset)
            )
            nodes = list(session.execute(stmt).scalars())

            paths = self._select_paths(plan.select)
            resolver = FieldResolver(session, plan.reference_label_ids, resolve_references)
            resolver.load(nodes, paths)
            rows = [resolver.project(node, paths) for node in nodes]

        logger.debug("Query on %s matched %d rows, returned %d (offset %d)",
                     plan.find, count, len(rows), plan.offset)
        return QueryResult(
            results=rows,
            count=count,
            has_more=plan.offset + len(rows) < count,
        )

    @staticmethod
    def _select_paths(select_paths: Optional[List[str]]) -> List[str]:
        if not select_paths:
            return list(DEFAULT_SELECT)
        paths: List[str] = []
        for path in select_paths:
            expanded = FULL_SELECT if path == "*" else (path,)
            for p in expanded:
                if p not in paths:
                    paths.append(p)
        return paths
