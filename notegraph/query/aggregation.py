"""
Aggregation engine for notegraph.

Groups the nodes matched by an aggregate plan by a field value or a time
bucket, one or two levels deep, and computes count/sum/avg/min/max per
group.

Time buckets:
    day      2024-01-15
    week     2024-W03   (ISO week)
    month    2024-01
    quarter  2024-Q1
    year     2024

Nodes without a value for the grouping field land in "(none)". A
multi-valued field groups by its first value, so every node is counted
exactly once and groups always sum to ``total``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from sqlalchemy import select

from notegraph.models import Node, FieldValue

from .ast import NONE_GROUP_KEY
from .dates import Clock, utcnow
from .executor import plan_condition
from .fields import chunked
from .planner import AggregatePlan, ResolvedField, ResolvedGroupBy
from .results import AggregateResult, GroupValue

if TYPE_CHECKING:
    from notegraph.db import Database

logger = logging.getLogger(__name__)


def bucket_label(dt: Optional[datetime], period: str) -> str:
    """Label of the calendar bucket containing ``dt``."""
    if dt is None:
        return NONE_GROUP_KEY
    if period == "day":
        return dt.strftime("%Y-%m-%d")
    if period == "week":
        year, week, _ = dt.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "month":
        return dt.strftime("%Y-%m")
    if period == "quarter":
        return f"{dt.year}-Q{(dt.month - 1) // 3 + 1}"
    if period == "year":
        return dt.strftime("%Y")
    raise ValueError(f"Unknown period: {period}")


def _to_number(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(str(text).strip())
    except ValueError:
        return None


class AggregationService:
    """
    Executes aggregate plans.

    Example:
        service = AggregationService(db)
        result = service.aggregate(planner.plan_aggregate(ast))
        result.groups   # {"Done": 4, "Open": 3, ...}
    """

    def __init__(self, db: "Database", clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or utcnow

    def aggregate(self, plan: AggregatePlan) -> AggregateResult:
        condition = plan_condition(plan, self.clock())

        with self.db.read_session() as session:
            rows = session.execute(
                select(Node.id, Node.name, Node.created, Node.updated)
                .where(condition)
                .order_by(Node.id)
            ).all()
            node_ids = [r.id for r in rows]

            needed: List[ResolvedField] = [g.field for g in plan.group_by if g.field is not None]
            needed.extend(a.field for a in plan.aggregates if a.field is not None)
            values = self._load_values(session, node_ids, needed)

        total = len(rows)
        keyed = [(self._keys(row, plan.group_by, values), row.id) for row in rows]

        if not plan.group_by:
            groups: Dict[str, GroupValue] = {"all": self._compute([i for _, i in keyed], plan, values)}
            return AggregateResult(total=total, group_count=1, groups=groups)

        groups, group_count, warning = self._group(keyed, 0, plan, values)

        percentages = None
        if plan.show_percent:
            percentages = self._percentages(keyed, groups, total, plan.percent_precision)

        logger.debug("Aggregated %d nodes into %d groups", total, group_count)
        return AggregateResult(
            total=total,
            group_count=group_count,
            groups=groups,
            percentages=percentages,
            warning=warning,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _load_values(session, node_ids: Sequence[str],
                     fields: Sequence[ResolvedField]) -> Dict[Tuple[str, str], List[str]]:
        """(field name, node id) -> value texts in order, for non-attribute fields."""
        result: Dict[Tuple[str, str], List[str]] = {}
        for field in fields:
            if field.is_attribute or not field.label_ids:
                continue
            for chunk in chunked(list(node_ids)):
                stmt = (
                    select(FieldValue.parent_id, FieldValue.value_text)
                    .where(FieldValue.parent_id.in_(chunk),
                           FieldValue.field_def_id.in_(list(field.label_ids)))
                    .order_by(FieldValue.parent_id, FieldValue.value_order, FieldValue.id)
                )
                for parent_id, text in session.execute(stmt):
                    result.setdefault((field.name, parent_id), []).append(text)
        return result

    # ------------------------------------------------------------------
    # Keys and values
    # ------------------------------------------------------------------

    def _keys(self, row, group_by: Sequence[ResolvedGroupBy],
              values: Dict[Tuple[str, str], List[str]]) -> Tuple[str, ...]:
        return tuple(self._key(row, g, values) for g in group_by)

    @staticmethod
    def _key(row, group: ResolvedGroupBy, values) -> str:
        if group.spec.is_time:
            return bucket_label(getattr(row, group.spec.date_field), group.spec.period)

        field = group.field
        if field is None:
            return NONE_GROUP_KEY
        if field.is_attribute:
            value = getattr(row, field.attribute)
            if isinstance(value, datetime):
                value = value.isoformat()
            return str(value) if value not in (None, "") else NONE_GROUP_KEY

        texts = [t for t in values.get((field.name, row.id), []) if t and t.strip()]
        return texts[0].strip() if texts else NONE_GROUP_KEY

    def _field_numbers(self, field: ResolvedField, node_ids: Sequence[str],
                       values) -> List[float]:
        numbers = []
        for node_id in node_ids:
            texts = values.get((field.name, node_id), [])
            number = _to_number(texts[0]) if texts else None
            if number is not None:
                numbers.append(number)
        return numbers

    def _compute(self, node_ids: List[str], plan: AggregatePlan, values) -> GroupValue:
        """A count when only count was asked for, else {output name: value}."""
        if len(plan.aggregates) == 1 and plan.aggregates[0].fn == "count":
            return len(node_ids)

        out: Dict[str, Any] = {}
        for agg in plan.aggregates:
            if agg.fn == "count":
                out[agg.output_name] = len(node_ids)
                continue
            numbers = self._field_numbers(agg.field, node_ids, values)
            if not numbers:
                out[agg.output_name] = None
            elif agg.fn == "sum":
                out[agg.output_name] = sum(numbers)
            elif agg.fn == "avg":
                out[agg.output_name] = sum(numbers) / len(numbers)
            elif agg.fn == "min":
                out[agg.output_name] = min(numbers)
            elif agg.fn == "max":
                out[agg.output_name] = max(numbers)
        return out

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    def _group(self, keyed: List[Tuple[Tuple[str, ...], str]], level: int,
               plan: AggregatePlan, values) -> Tuple[Dict[str, GroupValue], int, Optional[str]]:
        members: Dict[str, List[Tuple[Tuple[str, ...], str]]] = {}
        for keys, node_id in keyed:
            members.setdefault(keys[level], []).append((keys, node_id))

        ordered = sorted(members.items(), key=lambda item: (-len(item[1]), item[0]))

        warning = None
        if level == 0 and len(ordered) > plan.max_groups:
            warning = (f"Showing top {plan.max_groups} of {len(ordered)} groups; "
                       f"{len(ordered) - plan.max_groups} smaller groups omitted")
            logger.warning("Aggregation on %s truncated to %d of %d groups",
                           plan.find, plan.max_groups, len(ordered))
            ordered = ordered[:plan.max_groups]

        groups: Dict[str, GroupValue] = {}
        for key, items in ordered:
            if level + 1 < len(plan.group_by):
                nested, _, _ = self._group(items, level + 1, plan, values)
                groups[key] = nested
            else:
                groups[key] = self._compute([node_id for _, node_id in items], plan, values)

        return groups, len(groups), warning

    @staticmethod
    def _percentages(keyed, groups: Dict[str, GroupValue], total: int,
                     precision: int) -> Dict[str, float]:
        """Share of ``total`` per first-level group, scaled to 100."""
        if total == 0:
            return {key: 0.0 for key in groups}
        counts: Dict[str, int] = {}
        for keys, _ in keyed:
            counts[keys[0]] = counts.get(keys[0], 0) + 1
        return {key: round(counts.get(key, 0) * 100.0 / total, precision) for key in groups}
