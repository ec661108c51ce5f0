"""
Query planning for notegraph.

Planners validate query ASTs against a catalog snapshot and resolve every
symbolic name (tag, field, edge) to concrete ids. The resulting plans
carry everything the executors need, so execution does no further schema
lookups.

Field names resolve in this order: reserved node attributes (name,
created, updated, id), then the target tag's own fields, then inherited
fields breadth-first (closer ancestors win). A name that doesn't resolve
is a PlanError with a "did you mean" suggestion when a close match
exists.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from notegraph.config import NotegraphConfig, get_config
from notegraph.schema import CatalogSnapshot, FieldInfo, TagInfo, RESERVED_ATTRIBUTES
from notegraph.suggestions import find_similar, format_suggestion

from .ast import (
    QueryAST, AggregateAST, WhereClause, WhereGroup, WhereNode, Operator,
    GroupBySpec, WILDCARD,
)
from .errors import PlanError
from .graph_ast import (
    GraphAST, ReturnItem, OUTGOING, INCOMING, ARROWS,
    CHILD_EDGE, REF_EDGE, IMPLICIT_EDGES,
)

logger = logging.getLogger(__name__)

MAX_GROUP_LEVELS = 2


# =============================================================================
# Resolved forms
# =============================================================================

@dataclass(frozen=True)
class ResolvedField:
    """
    A field reference resolved against the schema.

    Exactly one of ``attribute`` (a node column) or ``label_ids`` (field
    definition ids to match in field_values) is set.
    """
    name: str
    attribute: Optional[str] = None
    label_ids: Tuple[str, ...] = ()
    data_type: str = "unknown"
    origin_tag_id: Optional[str] = None
    depth: int = 0

    @property
    def is_attribute(self) -> bool:
        return self.attribute is not None

    @property
    def is_reference(self) -> bool:
        return self.data_type == "reference"

    @property
    def is_date(self) -> bool:
        return self.attribute in ("created", "updated") or self.data_type == "date"

    @property
    def is_number(self) -> bool:
        return self.data_type == "number"

    def describe(self) -> str:
        if self.is_attribute:
            return f"{self.name} (node.{self.attribute})"
        ids = ",".join(self.label_ids)
        origin = ""
        if self.depth > 0:
            origin = f", inherited from {self.origin_tag_id} depth {self.depth}"
        return f"{self.name} (field {ids}, {self.data_type}{origin})"


@dataclass(frozen=True)
class ResolvedClause:
    field: ResolvedField
    operator: Operator
    value: object = None
    negated: bool = False


@dataclass(frozen=True)
class ResolvedGroup:
    op: str
    items: Tuple["ResolvedNode", ...] = ()
    negated: bool = False


ResolvedNode = Union[ResolvedClause, ResolvedGroup]


@dataclass(frozen=True)
class ResolvedOrder:
    field: ResolvedField
    desc: bool = False


@dataclass(frozen=True)
class ResolvedGroupBy:
    """A group-by level; ``field`` None with no period means every row is '(none)'."""
    spec: GroupBySpec
    field: Optional[ResolvedField] = None

    @property
    def label(self) -> str:
        return self.spec.label


@dataclass(frozen=True)
class ResolvedAggregate:
    fn: str
    output_name: str
    field: Optional[ResolvedField] = None


@dataclass
class QueryPlan:
    """Validated unified query."""
    find: str
    tag: Optional[TagInfo]
    tag_ids: Tuple[str, ...]
    where: List[ResolvedNode] = field(default_factory=list)
    select: Optional[List[str]] = None
    order_by: Optional[ResolvedOrder] = None
    limit: int = 100
    offset: int = 0
    reference_label_ids: Tuple[str, ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return self.tag is None


@dataclass
class AggregatePlan(QueryPlan):
    group_by: List[ResolvedGroupBy] = field(default_factory=list)
    aggregates: List[ResolvedAggregate] = field(default_factory=list)
    show_percent: bool = False
    max_groups: int = 100
    percent_precision: int = 1


@dataclass(frozen=True)
class ResolvedEdge:
    """
    How a traversal step moves.

    kind is 'field' (reference field values), 'child' (structural
    parent/child), 'ref' (inline references) or 'any' (every reference
    field plus inline references).
    """
    name: str
    kind: str
    label_ids: Tuple[str, ...] = ()


@dataclass
class GraphStepPlan:
    edge: ResolvedEdge
    direction: str
    depth: int
    target: Optional[TagInfo]
    target_tag_ids: Tuple[str, ...]
    alias: str
    where: List[ResolvedNode] = field(default_factory=list)


@dataclass
class GraphReturn:
    item: ReturnItem
    step_index: Optional[int] = None      # alias resolved to a path position
    field: Optional[ResolvedField] = None  # SUM/AVG operand


@dataclass
class GraphPlan:
    start: Optional[TagInfo]
    start_tag_ids: Tuple[str, ...]
    start_alias: str
    start_where: List[ResolvedNode] = field(default_factory=list)
    steps: List[GraphStepPlan] = field(default_factory=list)
    returns: List[GraphReturn] = field(default_factory=list)
    returns_all: bool = True
    limit: int = 100
    node_budget: int = 5000
    reference_label_ids: Tuple[str, ...] = ()

    @property
    def aliases(self) -> Dict[str, int]:
        """Alias -> path position (0 is the start set)."""
        result = {self.start_alias: 0}
        for i, step in enumerate(self.steps, 1):
            result.setdefault(step.alias, i)
        return result


# =============================================================================
# Shared resolution
# =============================================================================

class _Resolver:
    """Name resolution against one catalog snapshot."""

    def __init__(self, snapshot: CatalogSnapshot, config: Optional[NotegraphConfig] = None):
        self.snapshot = snapshot
        self.config = config or get_config()

    def _suggest(self, name: str, candidates: Sequence[str]) -> Optional[str]:
        matches = find_similar(name, candidates, threshold=self.config.suggestion_threshold)
        return format_suggestion(matches)

    def resolve_tag(self, name: str) -> Tuple[Optional[TagInfo], Tuple[str, ...]]:
        """Canonical tag plus every tag id sharing its name; (None, ()) for '*'."""
        if name.strip() == WILDCARD:
            return None, ()

        tags = self.snapshot.find_tags(name)
        if not tags:
            available = self.snapshot.tag_names()
            raise PlanError(
                f"Tag '{name}' not found",
                suggestion=self._suggest(name, available),
                available=available,
            )
        canonical = self.snapshot.find_tag(name)
        return canonical, tuple(sorted(t.id for t in tags))

    def visible_field_names(self, tag: Optional[TagInfo]) -> List[str]:
        if tag is None:
            return self.snapshot.all_field_names()
        return self.snapshot.field_names(tag.id)

    def resolve_field(self, name: str, tag: Optional[TagInfo],
                      tag_ids: Tuple[str, ...]) -> ResolvedField:
        lookup = name[len("fields."):] if name.lower().startswith("fields.") else name

        if lookup.lower() in RESERVED_ATTRIBUTES:
            return ResolvedField(name=lookup, attribute=lookup.lower())

        if tag is None:
            matches = self.snapshot.fields_named(lookup)
        else:
            primary = self.snapshot.resolve_field(tag.id, lookup)
            matches = [primary] if primary else []
            for tag_id in tag_ids:
                if tag_id == tag.id:
                    continue
                other = self.snapshot.resolve_field(tag_id, lookup)
                if other:
                    matches.append(other)

        if not matches:
            named = [tag.name for tag in tags if tag is not None]
            scope = f" on #{' or #'.join(named)}" if named and len(named) == len(tags) else ""
            available = self.visible_field_names(tag) + list(RESERVED_ATTRIBUTES)
            raise PlanError(
                f"Field '{name}' not found{scope}",
                suggestion=self._suggest(lookup, available),
                available=available,
            )

        return self._from_infos(matches[0].field_name, matches)

    @staticmethod
    def _from_infos(name: str, infos: List[FieldInfo]) -> ResolvedField:
        primary = infos[0]
        label_ids = tuple(sorted({f.field_label_id for f in infos}))
        return ResolvedField(
            name=name,
            label_ids=label_ids,
            data_type=primary.inferred_data_type,
            origin_tag_id=primary.origin_tag_id,
            depth=primary.depth,
        )

    def resolve_where(self, nodes: List[WhereNode], tag: Optional[TagInfo],
                      tag_ids: Tuple[str, ...]) -> List[ResolvedNode]:
        resolved: List[ResolvedNode] = []
        for node in nodes:
            if isinstance(node, WhereGroup):
                resolved.append(ResolvedGroup(
                    op=node.op,
                    items=tuple(self.resolve_where(node.items, tag, tag_ids)),
                    negated=node.negated,
                ))
            else:
                resolved.append(self._resolve_clause(node, tag, tag_ids))
        return resolved

    def _resolve_clause(self, clause: WhereClause, tag: Optional[TagInfo],
                        tag_ids: Tuple[str, ...]) -> ResolvedClause:
        return ResolvedClause(
            field=self.resolve_field(clause.field, tag, tag_ids),
            operator=clause.operator,
            value=clause.value,
            negated=clause.negated,
        )

    def reference_label_ids(self, tag: Optional[TagInfo]) -> Tuple[str, ...]:
        fields = self.snapshot.reference_fields(tag.id if tag else None)
        return tuple(sorted({f.field_label_id for f in fields}))

    def cap_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit < 1:
            limit = self.config.default_limit
        return min(limit, self.config.max_limit)


# =============================================================================
# Unified and aggregate queries
# =============================================================================

class QueryPlanner(_Resolver):
    """
    Validates unified and aggregate queries.

    Example:
        planner = QueryPlanner(catalog.snapshot())
        plan = planner.plan(build_ast({"find": "task", "where": {"Status": "Done"}}))
    """

    def plan(self, ast: QueryAST) -> QueryPlan:
        tag, tag_ids = self.resolve_tag(ast.find)
        where = self.resolve_where(ast.where, tag, tag_ids)

        order_by = None
        if ast.order_by is not None:
            order_by = ResolvedOrder(
                field=self.resolve_field(ast.order_by.field, tag, tag_ids),
                desc=ast.order_by.desc,
            )

        plan = QueryPlan(
            find=ast.find,
            tag=tag,
            tag_ids=tag_ids,
            where=where,
            select=list(ast.select) if ast.select else None,
            order_by=order_by,
            limit=self.cap_limit(ast.limit),
            offset=max(ast.offset or 0, 0),
            reference_label_ids=self.reference_label_ids(tag),
        )
        logger.debug("Planned query on %s (tag ids %s, %d conditions)",
                     ast.find, tag_ids, len(where))
        return plan

    def plan_aggregate(self, ast: AggregateAST) -> AggregatePlan:
        base = self.plan(ast)

        specs = [s for s in ast.group_by if s.is_time or s.field]
        if len(specs) > MAX_GROUP_LEVELS:
            raise PlanError(
                f"At most {MAX_GROUP_LEVELS} group-by levels are supported, got {len(specs)}"
            )

        group_by = []
        for spec in specs:
            if spec.is_time:
                group_by.append(ResolvedGroupBy(spec=spec))
                continue
            try:
                resolved = self.resolve_field(spec.field, base.tag, base.tag_ids)
            except PlanError:
                # Grouping on a field the tag doesn't have puts every row in "(none)"
                logger.debug("Group-by field %r not found on %s", spec.field, ast.find)
                resolved = None
            group_by.append(ResolvedGroupBy(spec=spec, field=resolved))

        aggregates = []
        for fn in ast.aggregate:
            operand = None
            if fn.fn != "count":
                if not fn.field:
                    raise PlanError(f"Aggregate '{fn.fn}' needs a field")
                operand = self.resolve_field(fn.field, base.tag, base.tag_ids)
            aggregates.append(ResolvedAggregate(fn=fn.fn, output_name=fn.output_name,
                                                field=operand))

        if ast.top is not None:
            max_groups = ast.top
        else:
            max_groups = min(ast.limit, self.config.max_groups)

        return AggregatePlan(
            find=base.find,
            tag=base.tag,
            tag_ids=base.tag_ids,
            where=base.where,
            select=None,
            order_by=None,
            limit=base.limit,
            offset=0,
            reference_label_ids=base.reference_label_ids,
            group_by=group_by,
            aggregates=aggregates or [ResolvedAggregate(fn="count", output_name="count")],
            show_percent=ast.show_percent,
            max_groups=max_groups,
            percent_precision=self.config.percent_precision,
        )


# =============================================================================
# Graph queries
# =============================================================================

class GraphQueryPlanner(_Resolver):
    """
    Validates graph queries.

    Every tag must exist, every WHERE field must resolve on the tag it
    filters, and every edge must be a field linking to nodes (on the
    source tag for outgoing steps, on the target tag for incoming ones,
    on either for CONNECTED TO) or one of the implicit edges 'child'
    and 'ref'.
    """

    def plan(self, ast: GraphAST) -> GraphPlan:
        start, start_ids = self.resolve_tag(ast.start.tag)
        start_alias = _alias(start, 0)
        start_where = self.resolve_where(ast.start_where, start, start_ids)

        default_depth = ast.depth if ast.depth is not None else self.config.default_depth

        steps: List[GraphStepPlan] = []
        source = start
        for i, step in enumerate(ast.steps, 1):
            target, target_ids = self.resolve_tag(step.target.tag)
            if step.direction == OUTGOING:
                lookup_tags = [source]
            elif step.direction == INCOMING:
                lookup_tags = [target]
            else:
                lookup_tags = [source, target]
            edge = self.resolve_edge(step.edge, *lookup_tags)
            depth = step.depth if step.depth is not None else default_depth

            steps.append(GraphStepPlan(
                edge=edge,
                direction=step.direction,
                depth=max(1, min(depth, self.config.max_depth)),
                target=target,
                target_tag_ids=target_ids,
                alias=_alias(target, i),
                where=self.resolve_where(step.where, target, target_ids),
            ))
            source = target

        plan = GraphPlan(
            start=start,
            start_tag_ids=start_ids,
            start_alias=start_alias,
            start_where=start_where,
            steps=steps,
            returns_all=ast.returns_all,
            limit=self.cap_limit(ast.limit),
            node_budget=self.config.traversal_node_budget,
        )

        result_tag = steps[-1].target if steps else start
        result_ids = steps[-1].target_tag_ids if steps else start_ids
        plan.reference_label_ids = self.reference_label_ids(result_tag)
        plan.returns = [self._resolve_return(item, plan, result_tag, result_ids)
                        for item in ast.return_items if item.path != "*" or item.function]

        logger.debug("Planned graph query from %s with %d steps", ast.start.tag, len(steps))
        return plan

    def resolve_edge(self, name: Optional[str], *tags: Optional[TagInfo]) -> ResolvedEdge:
        """Resolve an edge name against the fields of any of ``tags``; a None tag means all."""
        if name is None:
            return ResolvedEdge(name="*", kind="any",
                                label_ids=self.reference_label_ids(None))

        lower = name.lower()
        if lower == CHILD_EDGE:
            return ResolvedEdge(name=CHILD_EDGE, kind="child")
        if lower == REF_EDGE:
            return ResolvedEdge(name=REF_EDGE, kind="ref")

        candidates: List[FieldInfo] = []
        if not tags or any(tag is None for tag in tags):
            candidates = self.snapshot.reference_fields(None)
        else:
            for tag in tags:
                for tag_info in self.snapshot.find_tags(tag.name):
                    candidates.extend(self.snapshot.reference_fields(tag_info.id))

        matches = [f for f in candidates if f.field_name.lower() == lower]
        if matches:
            return ResolvedEdge(
                name=matches[0].field_name,
                kind="field",
                label_ids=tuple(sorted({f.field_label_id for f in matches})),
            )

        available = sorted({f.field_name for f in candidates}, key=str.lower) + list(IMPLICIT_EDGES)
        named = [tag.name for tag in tags if tag is not None]
        scope = f" on #{' or #'.join(named)}" if named and len(named) == len(tags) else ""
        raise PlanError(
            f"Edge '{name}' is not a reference field{scope}",
            suggestion=self._suggest(name, available),
            available=available,
        )

    def _resolve_return(self, item: ReturnItem, plan: GraphPlan,
                        result_tag: Optional[TagInfo],
                        result_ids: Tuple[str, ...]) -> GraphReturn:
        aliases = plan.aliases
        if item.function == "count":
            return GraphReturn(item=item, step_index=aliases.get(item.path.lower()))
        if item.function in ("sum", "avg"):
            return GraphReturn(item=item,
                               field=self.resolve_field(item.path, result_tag, result_ids))
        if item.alias_of is not None:
            return GraphReturn(item=item, step_index=aliases.get(item.alias_of.lower()))
        return GraphReturn(item=item)


def _alias(tag: Optional[TagInfo], index: int) -> str:
    return tag.normalized_name if tag else f"r{index}"


# =============================================================================
# Explain
# =============================================================================

def _format_value(value) -> str:
    if isinstance(value, list):
        return "[" + ", ".join(repr(v) for v in value) + "]"
    if isinstance(value, str):
        return repr(value)
    return str(value)


def _format_where(nodes: Sequence[ResolvedNode], indent: str) -> List[str]:
    lines = []
    for node in nodes:
        prefix = "NOT " if node.negated else ""
        if isinstance(node, ResolvedGroup):
            lines.append(f"{indent}{prefix}{node.op.upper()}:")
            lines.extend(_format_where(node.items, indent + "  "))
        elif node.operator == Operator.EXISTS:
            verb = "exists" if node.value else "missing"
            lines.append(f"{indent}{prefix}{node.field.describe()} {verb}")
        else:
            lines.append(f"{indent}{prefix}{node.field.describe()} "
                         f"{node.operator.value} {_format_value(node.value)}")
    return lines


def _format_tag(tag: Optional[TagInfo], tag_ids: Tuple[str, ...]) -> str:
    if tag is None:
        return "all content nodes"
    return f"#{tag.name} (ids {', '.join(tag_ids)})"


def format_explain(plan: Union[QueryPlan, GraphPlan]) -> str:
    """Render a plan as stable, human-readable text."""
    if isinstance(plan, GraphPlan):
        return _explain_graph(plan)

    lines = ["Query Plan:", f"  Find: {_format_tag(plan.tag, plan.tag_ids)}"]
    if plan.where:
        lines.append("  Filter:")
        lines.extend(_format_where(plan.where, "    "))

    if isinstance(plan, AggregatePlan):
        for level, group in enumerate(plan.group_by, 1):
            if group.spec.is_time:
                target = f"{group.spec.period} bucket of {group.spec.date_field}"
            elif group.field is None:
                target = f"{group.spec.field} (unknown field, all rows in '(none)')"
            else:
                target = group.field.describe()
            lines.append(f"  Group {level}: {target}")
        lines.append("  Aggregate: " + ", ".join(
            f"{a.fn}({a.field.name if a.field else '*'}) AS {a.output_name}"
            for a in plan.aggregates))
        if plan.show_percent:
            lines.append(f"  Percent: of total, {plan.percent_precision} decimals")
        lines.append(f"  Max groups: {plan.max_groups}")
        return "\n".join(lines)

    if plan.order_by:
        direction = "desc" if plan.order_by.desc else "asc"
        lines.append(f"  Order: {plan.order_by.field.describe()} {direction}, id asc")
    else:
        lines.append("  Order: created desc, id asc")
    if plan.select:
        lines.append(f"  Select: {', '.join(plan.select)}")
    lines.append(f"  Limit: {plan.limit} offset {plan.offset}")
    return "\n".join(lines)


def _explain_graph(plan: GraphPlan) -> str:
    lines = ["Execution Plan:"]
    n = 1
    start_filters = f" (with {len(plan.start_where)} filters)" if plan.start_where else ""
    lines.append(f"  Step {n}: Find {_format_tag(plan.start, plan.start_tag_ids)}"
                 f" as {plan.start_alias}{start_filters}")
    lines.extend(_format_where(plan.start_where, "    "))

    for step in plan.steps:
        n += 1
        arrow = ARROWS[step.direction]
        if step.edge.kind == "field":
            edge = f'"{step.edge.name}" (fields {", ".join(step.edge.label_ids)})'
        elif step.edge.kind == "any":
            edge = "any reference"
        else:
            edge = step.edge.kind
        lines.append(f"  Step {n}: Traverse {arrow} {edge} to "
                     f"{_format_tag(step.target, step.target_tag_ids)} as {step.alias}, "
                     f"depth 1..{step.depth}")
        if step.where:
            n += 1
            lines.append(f"  Step {n}: Filter {step.alias} ({len(step.where)} conditions)")
            lines.extend(_format_where(step.where, "    "))

    n += 1
    if plan.returns_all and not plan.returns:
        projection = "*"
    else:
        projection = ", ".join(r.item.column for r in plan.returns) or "*"
    lines.append(f"  Step {n}: Project: {projection}")
    lines.append(f"Limit: {plan.limit}")
    lines.append(f"Node budget: {plan.node_budget}")
    lines.append(f"Estimated hops: {len(plan.steps)}")
    return "\n".join(lines)
