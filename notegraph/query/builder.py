"""
Builder for structured unified queries.

Converts loosely-typed request dictionaries (as sent by a tool-calling
client or loaded from YAML) into QueryAST / AggregateAST objects.

    build_ast({
        "find": "task",
        "where": {
            "Status": "Done",                  # equality
            "Points": {"gte": 1, "lte": 10},   # closed range
            "created": {"after": "7d"},        # relative date
            "Owner": {"exists": True},
            "Priority": ["High", "Urgent"],    # in
        },
        "orderBy": "-created",
        "limit": 20,
    })

The builder never raises on well-typed input. Shorthand it doesn't
understand degrades to an equality clause; unknown keys are dropped and
recorded in ``ignored_keys``.
"""
import re
from typing import Any, Dict, List, Mapping, Optional

from .ast import (
    QueryAST, AggregateAST, WhereClause, WhereGroup, WhereNode, Operator,
    OrderBy, GroupBySpec, AggregateFunction, RelativeDate,
    DEFAULT_LIMIT, DEFAULT_OFFSET, WILDCARD, TIME_PERIODS, DATE_FIELDS,
    AGGREGATE_FUNCTIONS,
)
from .dates import is_relative_date

# Shorthand operator keys, in the order their clauses are emitted
SHORTHAND_OPERATORS = (
    ("eq", Operator.EQ),
    ("neq", Operator.NEQ),
    ("contains", Operator.CONTAINS),
    ("before", Operator.LT),
    ("after", Operator.GT),
    ("gt", Operator.GT),
    ("gte", Operator.GTE),
    ("lt", Operator.LT),
    ("lte", Operator.LTE),
    ("exists", Operator.EXISTS),
    ("in", Operator.IN),
)
_SHORTHAND_KEYS = {key for key, _ in SHORTHAND_OPERATORS}

_QUERY_KEYS = {
    "find": "find",
    "where": "where",
    "select": "select",
    "orderBy": "order_by",
    "order_by": "order_by",
    "limit": "limit",
    "offset": "offset",
}
_AGGREGATE_KEYS = {
    "groupBy": "group_by",
    "group_by": "group_by",
    "aggregate": "aggregate",
    "showPercent": "show_percent",
    "show_percent": "show_percent",
    "top": "top",
}

_GROUP_FN_RE = re.compile(r'^(\w+)\((\w*)\)$')


# =============================================================================
# Public API
# =============================================================================

def build_ast(request: Mapping[str, Any]) -> QueryAST:
    """Build a QueryAST from a structured request."""
    ast = QueryAST()
    _apply_query_keys(ast, request, _QUERY_KEYS)
    return ast


def build_aggregate_ast(request: Mapping[str, Any]) -> AggregateAST:
    """Build an AggregateAST from a structured request."""
    ast = AggregateAST()
    keys = dict(_QUERY_KEYS)
    keys.update(_AGGREGATE_KEYS)
    _apply_query_keys(ast, request, keys)

    if not ast.aggregate:
        ast.aggregate = [AggregateFunction("count")]
    return ast


def build_where(where: Any, ignored: Optional[List[str]] = None) -> List[WhereNode]:
    """
    Build a where tree from a dict, a list of dicts, or ready-made nodes.

    A dict's entries are ANDed together. The keys ``and``/``or`` take a list
    of sub-conditions and produce a nested group; ``not`` negates its
    sub-condition.
    """
    ignored = ignored if ignored is not None else []

    if where is None:
        return []
    if isinstance(where, (WhereClause, WhereGroup)):
        return [where]
    if isinstance(where, list):
        nodes: List[WhereNode] = []
        for item in where:
            nodes.extend(build_where(item, ignored))
        return nodes
    if not isinstance(where, Mapping):
        ignored.append(f"where:{where!r}")
        return []

    nodes = []
    for key, value in where.items():
        lower = str(key).lower()
        if lower in ("and", "or") and isinstance(value, list):
            items = build_where(value, ignored)
            if items:
                nodes.append(WhereGroup(lower, items))
        elif lower == "not":
            items = build_where(value, ignored)
            if items:
                nodes.append(WhereGroup("and", items, negated=True))
        else:
            nodes.extend(build_field_clauses(str(key), value, ignored))
    return nodes


def build_field_clauses(field_name: str, value: Any,
                        ignored: Optional[List[str]] = None) -> List[WhereClause]:
    """Clauses for one ``{field: value}`` shorthand entry."""
    ignored = ignored if ignored is not None else []

    if isinstance(value, Mapping):
        clauses = []
        for key, op in SHORTHAND_OPERATORS:
            if key in value:
                clauses.append(_make_clause(field_name, op, value[key], key))
        for key in value:
            if key not in _SHORTHAND_KEYS:
                ignored.append(f"{field_name}.{key}")
        if clauses:
            return clauses
        # Nothing recognizable: take the value literally
        return [WhereClause(field_name, Operator.EQ, dict(value))]

    if isinstance(value, (list, tuple)):
        return [WhereClause(field_name, Operator.IN, [_scalar(v) for v in value])]

    return [WhereClause(field_name, Operator.EQ, _scalar(value))]


def parse_group_by(spec: Any) -> List[GroupBySpec]:
    """
    Parse group-by shorthand.

    Accepts "Status,month", "week(updated)", a list of such strings, or
    dicts like {"field": "Status"} / {"time": "month", "dateField": "updated"}.
    """
    if spec is None:
        return []
    if isinstance(spec, str):
        return [_parse_group_item(part.strip()) for part in spec.split(",") if part.strip()]
    if isinstance(spec, Mapping):
        return [_parse_group_mapping(spec)]
    if isinstance(spec, (list, tuple)):
        result = []
        for item in spec:
            result.extend(parse_group_by(item))
        return result
    return [GroupBySpec(field=str(spec))]


def parse_aggregate_functions(spec: Any) -> List[AggregateFunction]:
    """Parse [{"fn": "sum", "field": "Points", "alias": "total"}], "count", "avg(Points)"."""
    if spec is None:
        return []
    if isinstance(spec, (list, tuple)):
        result = []
        for item in spec:
            result.extend(parse_aggregate_functions(item))
        return result
    if isinstance(spec, Mapping):
        fn = str(spec.get("fn", spec.get("function", "count"))).lower()
        if fn not in AGGREGATE_FUNCTIONS:
            fn = "count"
        return [AggregateFunction(fn=fn, field=spec.get("field"), alias=spec.get("alias"))]
    if isinstance(spec, str):
        match = _GROUP_FN_RE.match(spec.strip())
        if match:
            fn = match.group(1).lower()
            field_name = match.group(2) or None
        else:
            fn, field_name = spec.strip().lower(), None
        if fn not in AGGREGATE_FUNCTIONS:
            fn = "count"
        return [AggregateFunction(fn=fn, field=field_name)]
    return []


# =============================================================================
# Internals
# =============================================================================

def _apply_query_keys(ast: QueryAST, request: Mapping[str, Any],
                      keys: Dict[str, str]) -> None:
    if not isinstance(request, Mapping):
        ast.ignored_keys.append(repr(request))
        return

    for key, value in request.items():
        attr = keys.get(key)
        if attr is None:
            ast.ignored_keys.append(str(key))
            continue

        if attr == "find":
            ast.find = str(value).strip() if value not in (None, "") else WILDCARD
        elif attr == "where":
            ast.where = build_where(value, ast.ignored_keys)
        elif attr == "select":
            ast.select = _parse_select(value)
        elif attr == "order_by":
            ast.order_by = _parse_order_by(value)
        elif attr == "limit":
            ast.limit = _coerce_int(value, DEFAULT_LIMIT, minimum=1)
        elif attr == "offset":
            ast.offset = _coerce_int(value, DEFAULT_OFFSET, minimum=0)
        elif attr == "group_by":
            ast.group_by = parse_group_by(value)
        elif attr == "aggregate":
            ast.aggregate = parse_aggregate_functions(value)
        elif attr == "show_percent":
            ast.show_percent = _coerce_bool(value)
        elif attr == "top":
            ast.top = _coerce_int(value, None, minimum=1)


def _make_clause(field_name: str, op: Operator, value: Any, key: str) -> WhereClause:
    if op == Operator.EXISTS:
        return WhereClause(field_name, op, _coerce_bool(value))
    if op == Operator.IN:
        items = value if isinstance(value, (list, tuple)) else [value]
        return WhereClause(field_name, op, [_scalar(v) for v in items])
    if op.is_range and isinstance(value, str) and is_relative_date(value):
        return WhereClause(field_name, op, RelativeDate(value.strip().lower()))
    return WhereClause(field_name, op, _scalar(value))


def _scalar(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, RelativeDate)):
        return value
    return str(value)


def _parse_select(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return None


def _parse_order_by(value: Any) -> Optional[OrderBy]:
    if isinstance(value, OrderBy):
        return value
    if isinstance(value, str) and value.strip():
        return OrderBy.parse(value)
    if isinstance(value, Mapping) and value.get("field"):
        direction = str(value.get("direction", "asc")).lower()
        return OrderBy(field=str(value["field"]),
                       desc=bool(value.get("desc", direction == "desc")))
    return None


def _coerce_int(value: Any, default: Optional[int], minimum: int) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return n if n >= minimum else default


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _parse_group_item(item: str) -> GroupBySpec:
    lower = item.lower()
    if lower in TIME_PERIODS:
        return GroupBySpec(period=lower)
    match = _GROUP_FN_RE.match(item)
    if match and match.group(1).lower() in TIME_PERIODS:
        date_field = match.group(2).lower() or "created"
        if date_field not in DATE_FIELDS:
            date_field = "created"
        return GroupBySpec(period=match.group(1).lower(), date_field=date_field)
    return GroupBySpec(field=item)


def _parse_group_mapping(spec: Mapping[str, Any]) -> GroupBySpec:
    period = spec.get("time") or spec.get("period")
    if period and str(period).lower() in TIME_PERIODS:
        date_field = str(spec.get("dateField", spec.get("date_field", "created"))).lower()
        if date_field not in DATE_FIELDS:
            date_field = "created"
        return GroupBySpec(period=str(period).lower(), date_field=date_field)
    return GroupBySpec(field=str(spec.get("field", "")) or None)

