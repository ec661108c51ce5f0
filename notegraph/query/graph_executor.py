"""
Graph query execution for notegraph.

Traversal is breadth-first and iterative. Each step expands the current
frontier level by level up to its depth bound, loading the edges of a
whole level per query. One visited set spans the entire traversal, start
nodes included, so a node is reached at most once however many paths
lead to it; cycles from bidirectional references therefore terminate.

A per-query node budget bounds the number of nodes discovered. When it
is reached, expansion stops and the result is marked truncated; this is
not an error.

Each step's result is what its expansion reached, narrowed by the step's
target tag and WHERE filters. Nodes that fail the target filter are
still expanded through at deeper levels.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from sqlalchemy import select, and_

from notegraph.models import Node, FieldValue, Reference
from notegraph.scoring import (
    EmbeddingLookup, ScoringCandidate, ScoringOptions, score_and_sort, cosine_similarity,
)

from .dates import Clock, utcnow
from .fields import FieldResolver, FULL_SELECT, chunked
from .filters import FilterCompiler, tag_condition, content_condition
from .graph_ast import OUTGOING, BOTH
from .planner import GraphPlan, GraphStepPlan, ResolvedEdge
from .results import GraphQueryResult

if TYPE_CHECKING:
    from notegraph.db import Database

logger = logging.getLogger(__name__)


@dataclass
class Traversal:
    """
    State of one traversal.

    ``sets[i]`` holds the nodes of path position i in discovery order
    (0 is the start set). ``predecessor`` and ``distance`` record how each
    node was first reached.
    """
    budget: int
    visited: Set[str] = field(default_factory=set)
    predecessor: Dict[str, str] = field(default_factory=dict)
    distance: Dict[str, int] = field(default_factory=dict)
    position: Dict[str, int] = field(default_factory=dict)
    sets: List[List[str]] = field(default_factory=list)
    truncated: bool = False

    def visit(self, node_id: str, parent: Optional[str], position: int) -> bool:
        """Record a newly discovered node; False once the budget is spent."""
        if len(self.visited) >= self.budget:
            self.truncated = True
            return False
        self.visited.add(node_id)
        self.position[node_id] = position
        if parent is None:
            self.distance[node_id] = 0
        else:
            self.predecessor[node_id] = parent
            self.distance[node_id] = self.distance[parent] + 1
        return True

    def ancestor_at(self, node_id: str, position: int) -> Optional[str]:
        """The node at path position ``position`` on the way to ``node_id``."""
        current: Optional[str] = node_id
        while current is not None:
            if self.position.get(current) == position:
                return current
            if self.position.get(current, 0) < position:
                return None
            current = self.predecessor.get(current)
        return None


class GraphQueryExecutor:
    """
    Executes graph plans.

    Args:
        db: Database to read
        clock: Current-time source for relative dates and recency
        embeddings: Optional lookup for semantic ranking
        half_life_days: Recency half-life used when ranking
    """

    def __init__(self, db: "Database", clock: Optional[Clock] = None,
                 embeddings: Optional[EmbeddingLookup] = None,
                 half_life_days: float = 30.0):
        self.db = db
        self.clock = clock or utcnow
        self.embeddings = embeddings
        self.half_life_days = half_life_days

    def execute(self, plan: GraphPlan, limit: Optional[int] = None,
                include_paths: bool = False, rank: bool = False,
                rank_text: Optional[str] = None,
                resolve_references: bool = False) -> GraphQueryResult:
        """
        Execute a graph plan.

        Args:
            plan: Validated plan
            limit: Overrides the plan's limit
            include_paths: Report hop distance per returned node
            rank: Order results by relevance (distance and recency)
            rank_text: Also rank by semantic similarity to this text
                when an embedding lookup is available
            resolve_references: Return reference values as {"id", "name"}
        """
        limit = plan.limit if limit is None else limit
        now = self.clock()
        compiler = FilterCompiler(now)
        state = Traversal(budget=plan.node_budget)

        with self.db.read_session() as session:
            start = self._select(session, None, plan.start_tag_ids,
                                 compiler.compile(plan.start_where))
            accepted = []
            for node_id in start:
                if not state.visit(node_id, None, 0):
                    break
                accepted.append(node_id)
            state.sets.append(accepted)

            for index, step in enumerate(plan.steps, 1):
                reached = self._expand(session, state, accepted, step, index)
                accepted = self._select(session, reached, step.target_tag_ids,
                                        compiler.compile(step.where), preserve_order=True)
                state.sets.append(accepted)
                logger.debug("Step %d (%s %s): reached %d, kept %d",
                             index, step.direction, step.edge.name, len(reached), len(accepted))

            result_ids = state.sets[-1]
            if state.truncated:
                logger.warning("Graph traversal hit node budget of %d; result truncated",
                               plan.node_budget)

            nodes = self._load_nodes(session, result_ids)

            scores = None
            if rank or rank_text:
                result_ids, scores = self._rank(result_ids, nodes, state, rank_text, now)

            if plan.returns and any(r.item.function for r in plan.returns):
                return self._aggregate_result(session, plan, state, result_ids, nodes)

            count = len(result_ids)
            page_ids = result_ids[:limit]
            page = [nodes[i] for i in page_ids]

            resolver = FieldResolver(session, plan.reference_label_ids, resolve_references)
            rows, columns = self._project(session, plan, state, page, resolver)

        warning = _truncation_warning(plan, state)

        return GraphQueryResult(
            results=rows,
            count=count,
            has_more=count > len(page_ids),
            columns=columns,
            truncated=state.truncated,
            paths={i: state.distance[i] for i in page_ids} if include_paths else None,
            scores={i: scores[i] for i in page_ids} if scores is not None else None,
            warning=warning,
        )

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _select(self, session, candidates: Optional[List[str]], tag_ids: Sequence[str],
                where, preserve_order: bool = False) -> List[str]:
        """Node ids passing the tag and where filters, optionally among candidates."""
        condition = tag_condition(tag_ids)
        if where is not None:
            condition = and_(condition, where)

        if candidates is None:
            return list(session.execute(
                select(Node.id).where(condition).order_by(Node.id)
            ).scalars())

        passing: Set[str] = set()
        for chunk in chunked(candidates):
            passing.update(session.execute(
                select(Node.id).where(Node.id.in_(chunk), condition)
            ).scalars())
        ordered = [c for c in candidates if c in passing]
        return ordered if preserve_order else sorted(ordered)

    def _expand(self, session, state: Traversal, frontier: List[str],
                step: GraphStepPlan, index: int) -> List[str]:
        """Breadth-first expansion of one step; returns newly reached nodes in order."""
        reached: List[str] = []
        level = list(frontier)

        for _ in range(step.depth):
            if not level:
                break
            next_level: List[str] = []
            for src, dst in self._neighbors(session, level, step.edge, step.direction):
                if dst in state.visited:
                    continue
                if not state.visit(dst, src, index):
                    return reached
                reached.append(dst)
                next_level.append(dst)
            level = next_level

        return reached

    def _neighbors(self, session, level: List[str], edge: ResolvedEdge,
                   direction: str) -> List[Tuple[str, str]]:
        """(source, neighbor) pairs for a level, ordered by frontier position then id."""
        order = {node_id: i for i, node_id in enumerate(level)}
        pairs: Set[Tuple[str, str]] = set()
        directions = (True, False) if direction == BOTH else (direction == OUTGOING,)

        for chunk in chunked(level):
            for outgoing in directions:
                pairs.update(self._edge_pairs(session, chunk, edge, outgoing))

        return sorted((p for p in pairs if p[0] in order and p[1]),
                      key=lambda p: (order[p[0]], p[1]))

    @staticmethod
    def _edge_pairs(session, chunk: List[str], edge: ResolvedEdge,
                    outgoing: bool) -> Set[Tuple[str, str]]:
        """(source, neighbor) pairs of one edge kind and direction for a chunk of sources."""
        pairs: Set[Tuple[str, str]] = set()
        if edge.kind == "child":
            if outgoing:
                stmt = select(Node.parent_id, Node.id).where(
                    Node.parent_id.in_(chunk), content_condition())
            else:
                stmt = select(Node.id, Node.parent_id).where(
                    Node.id.in_(chunk), Node.parent_id.isnot(None))
            pairs.update(tuple(r) for r in session.execute(stmt))

        if edge.kind in ("field", "any") and edge.label_ids:
            labels = list(edge.label_ids)
            if outgoing:
                stmt = select(FieldValue.parent_id, FieldValue.value_node_id).where(
                    FieldValue.parent_id.in_(chunk),
                    FieldValue.field_def_id.in_(labels),
                    FieldValue.value_node_id.isnot(None))
            else:
                stmt = select(FieldValue.value_node_id, FieldValue.parent_id).where(
                    FieldValue.value_node_id.in_(chunk),
                    FieldValue.field_def_id.in_(labels))
            pairs.update(tuple(r) for r in session.execute(stmt))

        if edge.kind in ("ref", "any"):
            if outgoing:
                stmt = select(Reference.from_node, Reference.to_node).where(
                    Reference.from_node.in_(chunk))
            else:
                stmt = select(Reference.to_node, Reference.from_node).where(
                    Reference.to_node.in_(chunk))
            pairs.update(tuple(r) for r in session.execute(stmt))

        return pairs

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _rank(self, result_ids: List[str], nodes: Dict[str, Node], state: Traversal,
              rank_text: Optional[str], now) -> Tuple[List[str], Dict[str, float]]:
        query_vector = None
        if rank_text and self.embeddings is not None:
            query_vector = self.embeddings.vector_for_text(rank_text)
        elif rank_text:
            logger.debug("No embedding lookup configured; ranking without semantic similarity")

        candidates = []
        for node_id in result_ids:
            semantic = None
            if query_vector is not None:
                vector = self.embeddings.vector_for_node(node_id)
                if vector is not None:
                    semantic = cosine_similarity(query_vector, vector)
            node = nodes.get(node_id)
            candidates.append(ScoringCandidate(
                node_id=node_id,
                distance=state.distance.get(node_id, 0),
                semantic_sim=semantic,
                created=node.created if node is not None else None,
            ))

        options = ScoringOptions(now=now, half_life_days=self.half_life_days)
        ranked = score_and_sort(candidates, options)
        return ([s.candidate.node_id for s in ranked],
                {s.candidate.node_id: s.score.total for s in ranked})

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _load_nodes(session, ids: Sequence[str]) -> Dict[str, Node]:
        nodes: Dict[str, Node] = {}
        for chunk in chunked(list(ids)):
            for node in session.execute(select(Node).where(Node.id.in_(chunk))).scalars():
                nodes[node.id] = node
        return nodes

    def _project(self, session, plan: GraphPlan, state: Traversal, page: List[Node],
                 resolver: FieldResolver) -> Tuple[List[Dict], List[str]]:
        base_paths = list(FULL_SELECT) if plan.returns_all else []
        direct_paths = list(base_paths)
        aliased = []
        for ret in plan.returns:
            item = ret.item
            if item.alias_of is not None and ret.step_index is not None:
                aliased.append(ret)
            elif item.alias_of is not None:
                direct_paths.append(f"{item.alias_of}.{item.path}")
            else:
                direct_paths.append(item.path)

        resolver.load(page, direct_paths)

        # Nodes earlier on the path, for alias.field projections
        related: Dict[Tuple[str, int], Optional[str]] = {}
        for ret in aliased:
            for node in page:
                related[(node.id, ret.step_index)] = state.ancestor_at(node.id, ret.step_index)
        related_ids = sorted({i for i in related.values() if i})
        related_nodes = self._load_nodes(session, related_ids)
        if aliased:
            resolver.load(list(related_nodes.values()),
                          [ret.item.path for ret in aliased])

        rows = []
        for node in page:
            row = resolver.project(node, base_paths)
            for ret in plan.returns:
                item = ret.item
                if ret in aliased:
                    other = related_nodes.get(related.get((node.id, ret.step_index)) or "")
                    row[item.column] = resolver.value(other, item.path)
                elif item.alias_of is not None:
                    row[item.column] = resolver.value(node, f"{item.alias_of}.{item.path}")
                else:
                    row[item.column] = resolver.value(node, item.path)
            rows.append(row)

        columns = base_paths + [ret.item.column for ret in plan.returns]
        return rows, columns

    def _aggregate_result(self, session, plan: GraphPlan, state: Traversal,
                          result_ids: List[str], nodes: Dict[str, Node]) -> GraphQueryResult:
        resolver = FieldResolver(session)
        page = [nodes[i] for i in result_ids if i in nodes]
        resolver.load(page, ["fields"])

        row: Dict[str, object] = {}
        for ret in plan.returns:
            item = ret.item
            if item.function == "count":
                if ret.step_index is not None:
                    row[item.column] = len(state.sets[ret.step_index])
                elif item.path == "*":
                    row[item.column] = len(result_ids)
                else:
                    row[item.column] = sum(
                        1 for i in result_ids if resolver.raw_values(i, item.path))
            elif item.function in ("sum", "avg"):
                numbers = []
                for node in page:
                    if ret.field is not None and ret.field.is_attribute:
                        continue
                    for text in resolver.raw_values(node.id, item.path)[:1]:
                        try:
                            numbers.append(float(text))
                        except ValueError:
                            pass
                if not numbers:
                    row[item.column] = None
                elif item.function == "sum":
                    row[item.column] = sum(numbers)
                else:
                    row[item.column] = sum(numbers) / len(numbers)

        return GraphQueryResult(
            results=[row],
            count=1,
            has_more=False,
            columns=[ret.item.column for ret in plan.returns if ret.item.function],
            truncated=state.truncated,
            warning=_truncation_warning(plan, state),
        )


def _truncation_warning(plan: GraphPlan, state: Traversal) -> Optional[str]:
    if not state.truncated:
        return None
    return f"Traversal stopped after {plan.node_budget} nodes; results are incomplete"
