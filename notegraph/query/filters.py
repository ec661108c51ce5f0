"""
Compile resolved where-trees into SQLAlchemy boolean expressions.

Everything is evaluated by the database. Node attributes compare against
columns of ``nodes``; fields compile to EXISTS subqueries over
``field_values`` restricted to the resolved field definition ids.

Semantics:
    =, in      case-insensitive; reference fields also match the target id
    !=         true when no value equals the operand, including no value at all
    ~          case-insensitive substring
    > < >= <=  numeric for numbers, chronological for dates, else text
    exists     presence (true) or absence (false) of a non-empty value
"""
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence

from sqlalchemy import and_, or_, not_, exists, select, func, cast, Float, String, true, false
from sqlalchemy.sql.elements import ColumnElement

from notegraph.models import Node, FieldValue, tag_applications, NON_CONTENT_DOC_TYPES

from .ast import Operator, RelativeDate
from .dates import is_relative_date, resolve_relative_date, parse_date
from .planner import ResolvedClause, ResolvedGroup, ResolvedNode, ResolvedField


def tag_condition(tag_ids: Sequence[str]) -> ColumnElement:
    """Membership in any of the tags, or any content node when tag_ids is empty."""
    if not tag_ids:
        return content_condition()
    return exists(
        select(tag_applications.c.node_id).where(
            tag_applications.c.node_id == Node.id,
            tag_applications.c.tag_id.in_(list(tag_ids)),
        )
    )


def content_condition() -> ColumnElement:
    """Plain content nodes: no structural or system doc type."""
    return or_(Node.doc_type.is_(None), Node.doc_type.not_in(NON_CONTENT_DOC_TYPES))


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric_text(column) -> ColumnElement:
    """Stored text that reads as a number; CAST turns anything else into 0."""
    return and_(
        column.op("GLOB")("*[0-9]*"),
        not_(column.op("GLOB")("*[^-+.0-9eE ]*")),
    )


class FilterCompiler:
    """
    Compiles resolved clauses for one execution.

    ``now`` anchors relative date tokens; a compiler is created per
    execution so every clause of one query sees the same instant.
    """

    def __init__(self, now: datetime):
        self.now = now

    def compile(self, nodes: Sequence[ResolvedNode]) -> Optional[ColumnElement]:
        """AND of the top-level nodes, or None when there are none."""
        if not nodes:
            return None
        parts = [self._compile_node(n) for n in nodes]
        return parts[0] if len(parts) == 1 else and_(*parts)

    def _compile_node(self, node: ResolvedNode) -> ColumnElement:
        if isinstance(node, ResolvedGroup):
            parts = [self._compile_node(n) for n in node.items]
            if not parts:
                expr = true()
            elif node.op == "or":
                expr = or_(*parts)
            else:
                expr = and_(*parts)
        elif node.field.is_attribute:
            expr = self._compile_attribute(node)
        else:
            expr = self._compile_field(node)
        return not_(expr) if node.negated else expr

    # ------------------------------------------------------------------
    # Dates
    # ------------------------------------------------------------------

    def _resolve_date(self, value: Any) -> Optional[datetime]:
        if isinstance(value, RelativeDate):
            return resolve_relative_date(value.token, self.now)
        if is_relative_date(value):
            return resolve_relative_date(value, self.now)
        return parse_date(value)

    @staticmethod
    def _is_whole_day(value: Any, resolved: datetime) -> bool:
        if isinstance(value, RelativeDate) or is_relative_date(value):
            return True
        return isinstance(value, str) and len(value.strip()) == 10 and resolved.hour == 0 \
            and resolved.minute == 0 and resolved.second == 0

    # ------------------------------------------------------------------
    # Node attributes
    # ------------------------------------------------------------------

    def _compile_attribute(self, clause: ResolvedClause) -> ColumnElement:
        attribute = clause.field.attribute
        column = getattr(Node, attribute)
        op = clause.operator
        value = clause.value

        if op == Operator.EXISTS:
            present = column.isnot(None)
            if attribute == "name":
                present = and_(present, column != "")
            return present if value else not_(present)

        if attribute in ("created", "updated"):
            return self._compile_date_column(column, op, value)

        if op == Operator.CONTAINS:
            return func.lower(column).contains(_text(value).lower(), autoescape=True)

        if attribute == "id":
            if op == Operator.IN:
                return column.in_([_text(v) for v in value])
            return self._compare(column, op, _text(value))

        lowered = func.lower(column)
        if op == Operator.IN:
            return lowered.in_([_text(v).lower() for v in value])
        if op == Operator.EQ:
            return lowered == _text(value).lower()
        if op == Operator.NEQ:
            return or_(column.is_(None), lowered != _text(value).lower())
        return self._compare(column, op, _text(value))

    def _compile_date_column(self, column, op: Operator, value: Any) -> ColumnElement:
        if op == Operator.IN:
            parts = [self._compile_date_column(column, Operator.EQ, v) for v in value]
            return or_(*parts) if parts else false()
        if op == Operator.CONTAINS:
            return cast(column, String).contains(_text(value), autoescape=True)

        resolved = self._resolve_date(value)
        if resolved is None:
            return true() if op == Operator.NEQ else false()

        if op in (Operator.EQ, Operator.NEQ) and self._is_whole_day(value, resolved):
            same_day = and_(column >= resolved, column < resolved + timedelta(days=1))
            if op == Operator.EQ:
                return same_day
            return or_(column.is_(None), not_(same_day))
        if op == Operator.NEQ:
            return or_(column.is_(None), column != resolved)
        return self._compare(column, op, resolved)

    @staticmethod
    def _compare(column, op: Operator, value: Any) -> ColumnElement:
        if op == Operator.EQ:
            return column == value
        if op == Operator.NEQ:
            return or_(column.is_(None), column != value)
        if op == Operator.GT:
            return column > value
        if op == Operator.LT:
            return column < value
        if op == Operator.GTE:
            return column >= value
        if op == Operator.LTE:
            return column <= value
        raise ValueError(f"Operator {op.value} is not a comparison")

    # ------------------------------------------------------------------
    # Field values
    # ------------------------------------------------------------------

    def _values_exist(self, field: ResolvedField, *conditions) -> ColumnElement:
        if not field.label_ids:
            return false()
        return exists(
            select(FieldValue.id).where(
                FieldValue.parent_id == Node.id,
                FieldValue.field_def_id.in_(list(field.label_ids)),
                *conditions,
            )
        )

    def _equals(self, field: ResolvedField, value: Any) -> ColumnElement:
        text_match = func.lower(FieldValue.value_text) == _text(value).lower()
        if field.is_reference:
            return or_(text_match, FieldValue.value_node_id == _text(value))
        return text_match

    def _compile_field(self, clause: ResolvedClause) -> ColumnElement:
        field = clause.field
        op = clause.operator
        value = clause.value

        if op == Operator.EXISTS:
            present = self._values_exist(
                field,
                or_(FieldValue.value_text != "", FieldValue.value_node_id.isnot(None)),
            )
            return present if value else not_(present)

        if op == Operator.EQ:
            return self._values_exist(field, self._equals(field, value))

        if op == Operator.NEQ:
            return not_(self._values_exist(field, self._equals(field, value)))

        if op == Operator.IN:
            values: List[Any] = value if isinstance(value, list) else [value]
            if not values:
                return false()
            return self._values_exist(field, or_(*[self._equals(field, v) for v in values]))

        if op == Operator.CONTAINS:
            return self._values_exist(
                field,
                func.lower(FieldValue.value_text).contains(_text(value).lower(), autoescape=True),
            )

        return self._values_exist(field, self._range_condition(field, op, value))

    def _range_condition(self, field: ResolvedField, op: Operator, value: Any) -> ColumnElement:
        column = FieldValue.value_text

        if _is_number(value):
            return and_(_numeric_text(column), self._compare(cast(column, Float), op, value))

        if isinstance(value, RelativeDate) or field.is_date:
            resolved = self._resolve_date(value)
            if resolved is not None:
                if resolved.time() == datetime.min.time():
                    operand = resolved.strftime("%Y-%m-%d")
                else:
                    operand = resolved.strftime("%Y-%m-%dT%H:%M:%S")
                return and_(column != "", self._compare(column, op, operand))

        if field.is_number:
            try:
                number = float(value)
            except (TypeError, ValueError):
                return false()
            return and_(_numeric_text(column), self._compare(cast(column, Float), op, number))

        return self._compare(column, op, _text(value))
