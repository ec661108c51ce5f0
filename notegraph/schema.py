"""
Schema catalog for notegraph.

Read-only accessor over the persisted supertag metadata: tags, field
definitions, inheritance edges and instance counts. The catalog loads a
snapshot on first use and keeps it until invalidate() is called by
whatever process re-syncs the store.

Inheritance is a DAG of child -> parent edges with multiple parents
allowed. A tag's effective field set is its own fields followed by the
fields of its ancestors in breadth-first order; on duplicate names the
closer definition wins. Cycles in the inheritance data are tolerated:
a revisited tag is skipped and the walk is capped at
MAX_INHERITANCE_DEPTH levels.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from sqlalchemy import select, func

from notegraph.models import Supertag, FieldDefinition, supertag_parents, tag_applications

if TYPE_CHECKING:
    from notegraph.db import Database

logger = logging.getLogger(__name__)

MAX_INHERITANCE_DEPTH = 10

# Node attributes every query may reference regardless of tag
RESERVED_ATTRIBUTES = ("name", "created", "updated", "id")


@dataclass(frozen=True)
class TagInfo:
    """A supertag as seen by the catalog."""
    id: str
    name: str
    normalized_name: str
    color: Optional[str] = None
    instance_count: int = 0
    parent_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FieldInfo:
    """
    A field visible on a tag.

    origin_tag_id is the tag that defines the field; depth is 0 for own
    fields and the inheritance distance otherwise.
    """
    field_label_id: str
    field_name: str
    tag_id: str
    inferred_data_type: str = "unknown"
    target_supertag_id: Optional[str] = None
    field_order: int = 0
    origin_tag_id: Optional[str] = None
    depth: int = 0

    @property
    def is_reference(self) -> bool:
        return self.inferred_data_type == "reference"

    @property
    def links_nodes(self) -> bool:
        """Values point at other nodes: reference-typed or bound to a target tag."""
        return self.is_reference or self.target_supertag_id is not None

    @property
    def is_inherited(self) -> bool:
        return self.depth > 0


class CatalogSnapshot:
    """
    Immutable view of the schema metadata at one instant.

    Everything the planner needs is answered from memory; effective field
    sets are memoized per tag.
    """

    def __init__(self, tags: List[TagInfo], fields: List[FieldInfo]):
        self._tags: Dict[str, TagInfo] = {t.id: t for t in tags}
        self._by_normalized: Dict[str, List[TagInfo]] = {}
        for tag in tags:
            self._by_normalized.setdefault(tag.normalized_name, []).append(tag)

        self._own_fields: Dict[str, List[FieldInfo]] = {}
        for f in sorted(fields, key=lambda f: (f.tag_id, f.field_order, f.field_name)):
            self._own_fields.setdefault(f.tag_id, []).append(f)

        self._effective: Dict[str, List[FieldInfo]] = {}

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @property
    def tags(self) -> List[TagInfo]:
        return list(self._tags.values())

    def tag_names(self) -> List[str]:
        """All distinct tag names, sorted."""
        return sorted({t.name for t in self._tags.values()}, key=str.lower)

    def get_tag(self, tag_id: str) -> Optional[TagInfo]:
        return self._tags.get(tag_id)

    def find_tags(self, name: str) -> List[TagInfo]:
        """All tags carrying this name (case-insensitive, leading '#' ignored)."""
        return list(self._by_normalized.get(Supertag.normalize(name), []))

    def find_tag(self, name: str) -> Optional[TagInfo]:
        """
        The canonical tag for a name.

        When several tags share a name, prefer the one with the most
        parents, then the most own fields, then the most instances.
        """
        candidates = self.find_tags(name)
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda t: (len(t.parent_ids), len(self._own_fields.get(t.id, [])),
                           t.instance_count, t.id)
        )

    def has_tag(self, name: str) -> bool:
        return bool(self.find_tags(name))

    def ancestors(self, tag_id: str) -> List[Tuple[str, int]]:
        """Ancestor tag ids with their distance, breadth-first, nearest first."""
        result: List[Tuple[str, int]] = []
        visited = {tag_id}
        queue = deque((pid, 1) for pid in self._parent_ids(tag_id))

        while queue:
            current, depth = queue.popleft()
            if current in visited or depth > MAX_INHERITANCE_DEPTH:
                continue
            visited.add(current)
            result.append((current, depth))
            for pid in self._parent_ids(current):
                if pid not in visited:
                    queue.append((pid, depth + 1))

        return result

    def _parent_ids(self, tag_id: str) -> Tuple[str, ...]:
        tag = self._tags.get(tag_id)
        return tag.parent_ids if tag else ()

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def own_fields(self, tag_id: str) -> List[FieldInfo]:
        return list(self._own_fields.get(tag_id, []))

    def effective_fields(self, tag_id: str) -> List[FieldInfo]:
        """Own fields followed by inherited fields; closer definitions win."""
        cached = self._effective.get(tag_id)
        if cached is not None:
            return list(cached)

        seen_names = set()
        result: List[FieldInfo] = []

        levels = [(tag_id, 0)] + self.ancestors(tag_id)
        for source_id, depth in levels:
            for f in self._own_fields.get(source_id, []):
                key = f.field_name.lower()
                if key in seen_names:
                    continue
                seen_names.add(key)
                result.append(FieldInfo(
                    field_label_id=f.field_label_id,
                    field_name=f.field_name,
                    tag_id=tag_id,
                    inferred_data_type=f.inferred_data_type,
                    target_supertag_id=f.target_supertag_id,
                    field_order=f.field_order,
                    origin_tag_id=source_id,
                    depth=depth,
                ))

        self._effective[tag_id] = result
        return list(result)

    def field_names(self, tag_id: str) -> List[str]:
        return [f.field_name for f in self.effective_fields(tag_id)]

    def resolve_field(self, tag_id: str, name: str) -> Optional[FieldInfo]:
        """Resolve a field name on a tag, considering inheritance."""
        key = name.lower()
        for f in self.effective_fields(tag_id):
            if f.field_name.lower() == key:
                return f
        return None

    def fields_named(self, name: str) -> List[FieldInfo]:
        """Every field definition with this name, across all tags."""
        key = name.lower()
        return [
            f for fields in self._own_fields.values() for f in fields
            if f.field_name.lower() == key
        ]

    def all_field_names(self) -> List[str]:
        names = {f.field_name for fields in self._own_fields.values() for f in fields}
        return sorted(names, key=str.lower)

    def reference_fields(self, tag_id: Optional[str] = None) -> List[FieldInfo]:
        """Fields linking to other nodes visible on a tag, or on any tag."""
        if tag_id is not None:
            return [f for f in self.effective_fields(tag_id) if f.links_nodes]
        return [
            f for fields in self._own_fields.values() for f in fields
            if f.links_nodes
        ]

    def field_type(self, tag_name: str, field_name: str) -> Optional[str]:
        """Inferred data type of a field on a tag, or None if unknown."""
        tag = self.find_tag(tag_name)
        if tag is None:
            return None
        f = self.resolve_field(tag.id, field_name)
        return f.inferred_data_type if f else None

    def is_reserved(self, name: str) -> bool:
        return name.lower() in RESERVED_ATTRIBUTES


class SchemaCatalog:
    """
    Cached, invalidatable source of catalog snapshots.

    Example:
        catalog = SchemaCatalog(db)
        snap = catalog.snapshot()
        snap.resolve_field(snap.find_tag("employee").id, "Email")
    """

    def __init__(self, db: "Database"):
        self.db = db
        self._snapshot: Optional[CatalogSnapshot] = None

    def snapshot(self) -> CatalogSnapshot:
        """Current snapshot, loading it from the store if needed."""
        if self._snapshot is None:
            self._snapshot = self._load()
        return self._snapshot

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next access reloads it."""
        self._snapshot = None

    def _load(self) -> CatalogSnapshot:
        with self.db.read_session() as session:
            parents: Dict[str, List[str]] = {}
            for child_id, parent_id in session.execute(
                select(supertag_parents.c.child_tag_id, supertag_parents.c.parent_tag_id)
                .order_by(supertag_parents.c.child_tag_id, supertag_parents.c.parent_tag_id)
            ):
                parents.setdefault(child_id, []).append(parent_id)

            counts = dict(session.execute(
                select(tag_applications.c.tag_id, func.count(tag_applications.c.node_id))
                .group_by(tag_applications.c.tag_id)
            ).all())

            tags = [
                TagInfo(
                    id=row.id,
                    name=row.name,
                    normalized_name=row.normalized_name or Supertag.normalize(row.name),
                    color=row.color,
                    instance_count=counts.get(row.id, 0),
                    parent_ids=tuple(parents.get(row.id, ())),
                )
                for row in session.execute(
                    select(Supertag.id, Supertag.name, Supertag.normalized_name, Supertag.color)
                ).all()
            ]

            fields = [
                FieldInfo(
                    field_label_id=row.field_label_id,
                    field_name=row.field_name,
                    tag_id=row.tag_id,
                    inferred_data_type=row.inferred_data_type or "unknown",
                    target_supertag_id=row.target_supertag_id,
                    field_order=row.field_order or 0,
                    origin_tag_id=row.tag_id,
                    depth=0,
                )
                for row in session.execute(
                    select(
                        FieldDefinition.tag_id, FieldDefinition.field_name,
                        FieldDefinition.field_label_id, FieldDefinition.field_order,
                        FieldDefinition.inferred_data_type, FieldDefinition.target_supertag_id,
                    )
                ).all()
            ]

        logger.info("Loaded schema catalog: %d tags, %d fields", len(tags), len(fields))
        return CatalogSnapshot(tags, fields)
