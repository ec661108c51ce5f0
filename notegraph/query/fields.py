"""
Field value loading and row projection.

FieldResolver loads everything a page of result rows needs in a few
batched queries (field values, tags, parents, referenced node names) and
then projects each node onto the requested paths:

    id, name, created, updated   node attributes
    tags                         tag names
    parent, parent.<attr>        the parent node (parent.tags, parent.name, ...)
    fields                       every field as {name: value}
    fields.<Name>, <Name>        one field's value

Single values come back as scalars, multi-valued fields as lists, and
missing values as None. Paths that don't resolve yield None.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from notegraph.models import Node, FieldValue

DEFAULT_SELECT = ("id", "name", "created", "updated")
FULL_SELECT = ("id", "name", "created", "updated", "tags", "fields")
NODE_ATTRIBUTES = ("id", "name", "created", "updated")

CHUNK_SIZE = 500


def chunked(items: Sequence[str], size: int = CHUNK_SIZE) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _format(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class FieldResolver:
    """
    Batched projection for one result page.

    Args:
        session: Open read session
        reference_label_ids: Field definition ids of reference-typed fields
        resolve_references: Return reference values as {"id", "name"}
    """

    def __init__(self, session: Session, reference_label_ids: Iterable[str] = (),
                 resolve_references: bool = False):
        self.session = session
        self.reference_label_ids: Set[str] = set(reference_label_ids)
        self.resolve_references = resolve_references

        self._nodes: Dict[str, Node] = {}
        self._values: Dict[str, Dict[str, List[FieldValue]]] = {}
        self._names: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, nodes: Sequence[Node], paths: Sequence[str]) -> None:
        """Prefetch what projecting ``paths`` for ``nodes`` will need."""
        for node in nodes:
            self._nodes[node.id] = node

        lowered = [p.lower() for p in paths]
        needs_parent = any(p == "parent" or p.startswith("parent.") for p in lowered)
        parent_ids = sorted({n.parent_id for n in nodes if n.parent_id}) if needs_parent else []
        if parent_ids:
            self._load_nodes(parent_ids)

        ids = [n.id for n in nodes]
        needs_fields = any(p not in NODE_ATTRIBUTES and p != "tags"
                           and not p.startswith("parent") for p in lowered)
        if needs_fields:
            self._load_values(ids)

        if self.resolve_references:
            targets = sorted({
                v.value_node_id
                for per_node in self._values.values()
                for values in per_node.values()
                for v in values
                if v.value_node_id and v.field_def_id in self.reference_label_ids
            })
            self._load_names(targets)

    def _load_nodes(self, ids: Sequence[str]) -> None:
        missing = [i for i in ids if i not in self._nodes]
        for chunk in chunked(missing):
            for node in self.session.execute(select(Node).where(Node.id.in_(chunk))).scalars():
                self._nodes[node.id] = node

    def _load_values(self, ids: Sequence[str]) -> None:
        missing = [i for i in ids if i not in self._values]
        for node_id in missing:
            self._values[node_id] = {}
        for chunk in chunked(missing):
            stmt = (
                select(FieldValue)
                .where(FieldValue.parent_id.in_(chunk))
                .order_by(FieldValue.parent_id, FieldValue.field_name,
                          FieldValue.value_order, FieldValue.id)
            )
            for value in self.session.execute(stmt).scalars():
                per_node = self._values[value.parent_id]
                per_node.setdefault(value.field_name, []).append(value)

    def _load_names(self, ids: Sequence[str]) -> None:
        missing = [i for i in ids if i not in self._names]
        for node_id in missing:
            self._names[node_id] = None
        for chunk in chunked(missing):
            for node_id, name in self.session.execute(
                    select(Node.id, Node.name).where(Node.id.in_(chunk))):
                self._names[node_id] = name

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def project(self, node: Node, paths: Sequence[str]) -> Dict[str, Any]:
        """Project one node onto the paths; unresolvable paths yield None."""
        row: Dict[str, Any] = {}
        for path in paths:
            row[path] = self.value(node, path)
        return row

    def value(self, node: Optional[Node], path: str) -> Any:
        if node is None:
            return None

        lower = path.lower()
        if lower in NODE_ATTRIBUTES:
            return _format(getattr(node, lower))
        if lower == "tags":
            return sorted(node.tag_names, key=str.lower)
        if lower == "fields":
            return self.fields(node.id)
        if lower == "parent":
            return node.parent_id
        if lower.startswith("parent."):
            parent = self._nodes.get(node.parent_id) if node.parent_id else None
            rest = path.split(".", 1)[1]
            if rest.lower() not in NODE_ATTRIBUTES and rest.lower() != "tags":
                return None
            return self.value(parent, rest)
        if lower.startswith("fields."):
            return self.field_value(node.id, path.split(".", 1)[1])
        if "." in path:
            return None
        return self.field_value(node.id, path)

    def fields(self, node_id: str) -> Dict[str, Any]:
        per_node = self._values.get(node_id, {})
        return {name: self._collapse(values) for name, values in per_node.items()}

    def field_value(self, node_id: str, name: str) -> Any:
        per_node = self._values.get(node_id, {})
        key = name.lower()
        for field_name, values in per_node.items():
            if field_name.lower() == key:
                return self._collapse(values)
        return None

    def raw_values(self, node_id: str, name: str) -> List[str]:
        """Text of every value of a field, in value order."""
        per_node = self._values.get(node_id, {})
        key = name.lower()
        for field_name, values in per_node.items():
            if field_name.lower() == key:
                return [v.value_text for v in values]
        return []

    def _collapse(self, values: List[FieldValue]) -> Any:
        converted = [self._convert(v) for v in values]
        if not converted:
            return None
        return converted[0] if len(converted) == 1 else converted

    def _convert(self, value: FieldValue) -> Any:
        if (self.resolve_references and value.value_node_id
                and value.field_def_id in self.reference_label_ids):
            name = self._names.get(value.value_node_id)
            return {"id": value.value_node_id, "name": name if name is not None else value.value_text}
        return value.value_text
