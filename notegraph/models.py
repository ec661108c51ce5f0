"""
SQLAlchemy models for the notegraph relational store.

This module defines the fixed schema the query subsystem reads: nodes,
supertags with their inheritance edges, field definitions, tag
applications, field values, and inline references. The store is written
by an external indexer; the query layer only ever reads it.

All timestamps are naive UTC datetimes.
"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Table, Index,
    UniqueConstraint
)
from sqlalchemy.orm import (
    DeclarativeBase, relationship, Mapped, mapped_column
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# Node doc types. A NULL doc type is a plain content node.
DOC_TYPE_NODE = "node"
DOC_TYPE_TUPLE = "tuple"
DOC_TYPE_TAG_DEF = "tagDef"
DOC_TYPE_ATTR_DEF = "attrDef"
DOC_TYPE_META = "metanode"

# Doc types that never count as content for wildcard queries
NON_CONTENT_DOC_TYPES = (DOC_TYPE_TUPLE, DOC_TYPE_TAG_DEF, DOC_TYPE_ATTR_DEF, DOC_TYPE_META)

# Inferred data types for field definitions
DATA_TYPES = (
    "text", "number", "date", "checkbox", "url", "email",
    "options", "reference", "unknown",
)


# Association table: which supertags are applied to which nodes
tag_applications = Table(
    'tag_applications',
    Base.metadata,
    Column('node_id', String(64), ForeignKey('nodes.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', String(64), ForeignKey('supertags.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_tag_applications_node_id', 'node_id'),
    Index('ix_tag_applications_tag_id', 'tag_id')
)

# Association table: supertag inheritance (child extends parent)
supertag_parents = Table(
    'supertag_parents',
    Base.metadata,
    Column('child_tag_id', String(64), ForeignKey('supertags.id', ondelete='CASCADE'), primary_key=True),
    Column('parent_tag_id', String(64), ForeignKey('supertags.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_supertag_parents_child', 'child_tag_id'),
    Index('ix_supertag_parents_parent', 'parent_tag_id')
)


class Node(Base):
    """
    A node of the exported note graph.

    Attributes:
        id: Stable opaque identifier from the export
        name: Display name
        doc_type: Structural role (NULL for plain content)
        parent_id: Owning node (NULL for roots)
        created: Creation timestamp
        updated: Last modification timestamp
    """
    __tablename__ = 'nodes'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default='')
    doc_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    # No foreign key: exports routinely reference nodes outside the snapshot
    parent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tags: Mapped[List["Supertag"]] = relationship(
        "Supertag",
        secondary=tag_applications,
        back_populates="nodes",
        lazy="selectin"
    )

    __table_args__ = (
        Index('ix_nodes_created_desc', created.desc()),
        Index('ix_nodes_updated', 'updated'),
    )

    @property
    def tag_names(self) -> List[str]:
        """Get list of supertag names applied to this node."""
        return [tag.name for tag in self.tags]

    def __repr__(self):
        return f"<Node(id={self.id!r}, name={(self.name or '')[:50]!r})>"


class Supertag(Base):
    """
    A supertag: a named, inheritable type label defining a field schema.
    """
    __tablename__ = 'supertags'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    normalized_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    color: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    nodes: Mapped[List["Node"]] = relationship(
        "Node",
        secondary=tag_applications,
        back_populates="tags",
        lazy="dynamic"
    )
    fields: Mapped[List["FieldDefinition"]] = relationship(
        "FieldDefinition",
        back_populates="tag",
        order_by="FieldDefinition.field_order",
        cascade="all, delete-orphan"
    )
    parents: Mapped[List["Supertag"]] = relationship(
        "Supertag",
        secondary=supertag_parents,
        primaryjoin=lambda: Supertag.id == supertag_parents.c.child_tag_id,
        secondaryjoin=lambda: Supertag.id == supertag_parents.c.parent_tag_id,
        lazy="selectin"
    )

    @staticmethod
    def normalize(name: str) -> str:
        """Normalize a tag name for case-insensitive lookups."""
        return name.strip().lstrip('#').lower()

    def __repr__(self):
        return f"<Supertag(id={self.id!r}, name={self.name!r})>"


class FieldDefinition(Base):
    """
    A named, typed field slot owned by a supertag.

    field_label_id is the id of the field's label node; field values of
    instances (including instances of child tags that inherit the field)
    reference it through FieldValue.field_def_id.
    """
    __tablename__ = 'supertag_fields'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tag_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('supertags.id', ondelete='CASCADE'), nullable=False, index=True
    )
    field_name: Mapped[str] = mapped_column(String(256), nullable=False)
    field_label_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    field_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inferred_data_type: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown")
    target_supertag_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    tag: Mapped["Supertag"] = relationship("Supertag", back_populates="fields")

    __table_args__ = (
        UniqueConstraint('tag_id', 'field_name', name='uq_supertag_fields_tag_field'),
    )

    def __repr__(self):
        return f"<FieldDefinition(tag_id={self.tag_id!r}, field_name={self.field_name!r})>"


class FieldValue(Base):
    """
    One value filled into a field slot for a node.

    Multi-valued fields produce several rows sharing (parent_id, field_def_id),
    ordered by value_order. For reference fields value_node_id is the
    referenced node and value_text its display name at index time.
    """
    __tablename__ = 'field_values'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tuple_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    parent_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('nodes.id', ondelete='CASCADE'), nullable=False
    )
    field_def_id: Mapped[str] = mapped_column(String(64), nullable=False)
    field_name: Mapped[str] = mapped_column(String(256), nullable=False)
    value_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    value_text: Mapped[str] = mapped_column(Text, nullable=False, default='')
    value_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_field_values_parent', 'parent_id'),
        Index('ix_field_values_field_def', 'field_def_id'),
        Index('ix_field_values_parent_field', 'parent_id', 'field_def_id'),
        Index('ix_field_values_field_name', 'field_name'),
    )

    def __repr__(self):
        return f"<FieldValue(parent_id={self.parent_id!r}, field_name={self.field_name!r}, value={self.value_text[:40]!r})>"


class Reference(Base):
    """Inline reference from one node to another."""
    __tablename__ = 'references'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_node: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    to_node: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False, default="inline_ref")

    def __repr__(self):
        return f"<Reference({self.from_node!r} -> {self.to_node!r}, {self.reference_type!r})>"
