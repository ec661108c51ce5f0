"""
AST for the graph query DSL.

    FIND task WHERE Status != Done
        -> Assignee TO person
        CONNECTED TO project VIA Project DEPTH 2
        RETURN name, person.name, COUNT(project) AS projects
        LIMIT 50

A query starts from the nodes matching the FIND predicate and walks one
traversal step at a time. Each step names a typed edge (a reference
field, or the implicit ``child`` / ``ref`` edges), a direction and an
optional depth bound, and may narrow the nodes it reaches by tag and by
WHERE conditions. Results are the nodes reached by the last step.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from .ast import WhereNode, WILDCARD

OUTGOING = "outgoing"
INCOMING = "incoming"
# CONNECTED TO follows edges whichever side owns them
BOTH = "both"

ARROWS = {OUTGOING: "->", INCOMING: "<-", BOTH: "<->"}

# Edges that exist without a field definition
CHILD_EDGE = "child"
REF_EDGE = "ref"
IMPLICIT_EDGES = (CHILD_EDGE, REF_EDGE)

RETURN_FUNCTIONS = ("count", "sum", "avg")


@dataclass
class NodePredicate:
    """Which nodes a FIND or TO clause accepts: a tag name or any node."""
    tag: str = WILDCARD

    @property
    def is_wildcard(self) -> bool:
        return self.tag == WILDCARD

    def __repr__(self):
        return f"NodePredicate({self.tag})"


@dataclass
class TraversalStep:
    """
    One hop of the path.

    ``edge`` None means any reference field plus inline references
    (``CONNECTED TO x`` without ``VIA``). Arrow steps have a single
    direction; ``CONNECTED TO`` steps go both ways.
    """
    edge: Optional[str] = None
    direction: str = OUTGOING
    depth: Optional[int] = None
    target: NodePredicate = field(default_factory=NodePredicate)
    where: List[WhereNode] = field(default_factory=list)

    def __repr__(self):
        arrow = ARROWS[self.direction]
        edge = self.edge or "any"
        depth = f" depth={self.depth}" if self.depth is not None else ""
        return f"TraversalStep({arrow} {edge} to {self.target.tag}{depth})"


@dataclass
class ReturnItem:
    """
    A RETURN projection.

    Examples:
        ReturnItem("name")
        ReturnItem("name", alias_of="person")       # person.name
        ReturnItem("project", function="count", alias="projects")
    """
    path: str
    alias_of: Optional[str] = None
    function: Optional[str] = None
    alias: Optional[str] = None

    @property
    def column(self) -> str:
        if self.alias:
            return self.alias
        if self.function:
            return f"{self.function}_{self.path}"
        if self.alias_of:
            return f"{self.alias_of}.{self.path}"
        return self.path


@dataclass
class GraphAST:
    start: NodePredicate = field(default_factory=NodePredicate)
    start_where: List[WhereNode] = field(default_factory=list)
    steps: List[TraversalStep] = field(default_factory=list)
    depth: Optional[int] = None
    return_items: List[ReturnItem] = field(default_factory=list)
    limit: Optional[int] = None

    @property
    def returns_all(self) -> bool:
        return not self.return_items or any(i.path == "*" for i in self.return_items)

    @property
    def terminal_where(self) -> List[WhereNode]:
        """Filters applied to the result nodes."""
        return self.steps[-1].where if self.steps else self.start_where

    @property
    def has_aggregates(self) -> bool:
        return any(i.function for i in self.return_items)
