import os
from datetime import datetime, timedelta

import pytest

import notegraph.config as config_module
from notegraph.config import NotegraphConfig
from notegraph.db import Database
from notegraph.models import (
    Node, Supertag, FieldDefinition, FieldValue, Reference, DOC_TYPE_TUPLE
)
from notegraph.query import QueryService


# Every date-dependent test runs against this instant
FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0)


def fixed_clock():
    return FIXED_NOW


@pytest.fixture(autouse=True)
def clean_notegraph_env(monkeypatch, tmp_path):
    """
    Isolate every test from the real configuration.

    Removes NOTEGRAPH_ environment variables, points HOME at a temp
    directory and drops the cached global config.
    """
    for key in list(os.environ.keys()):
        if key.startswith("NOTEGRAPH_"):
            monkeypatch.delenv(key, raising=False)

    mock_home = tmp_path / "home"
    mock_home.mkdir()
    monkeypatch.setenv("HOME", str(mock_home))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_config", None)

    return tmp_path


class GraphBuilder:
    """
    Test data builder for populating a store the way the indexer would.

    Usage:
        builder = GraphBuilder(db)
        builder.tag("tg-task", "task").field("tg-task", "f-status", "Status", "options")
        builder.node("t1", "Write docs", tags=["tg-task"]).value("t1", "f-status", "Done")
        builder.build()
    """
    def __init__(self, db):
        self.db = db
        self.tags = []
        self.parents = []
        self.fields = []
        self.nodes = []
        self.values = []
        self.refs = []
        self._names = {}
        self._field_names = {}
        self._orders = {}

    def tag(self, tag_id, name, parents=(), color=None):
        self.tags.append(dict(id=tag_id, name=name, normalized_name=Supertag.normalize(name),
                              color=color))
        for parent_id in parents:
            self.parents.append((tag_id, parent_id))
        return self

    def field(self, tag_id, label_id, name, data_type="text", target=None):
        order = len([f for f in self.fields if f["tag_id"] == tag_id])
        self.fields.append(dict(tag_id=tag_id, field_label_id=label_id, field_name=name,
                                inferred_data_type=data_type, target_supertag_id=target,
                                field_order=order))
        self._field_names[label_id] = name
        return self

    def node(self, node_id, name, tags=(), created=None, updated=None,
             parent=None, doc_type=None):
        self.nodes.append(dict(id=node_id, name=name, created=created,
                               updated=updated or created, parent_id=parent,
                               doc_type=doc_type, tags=list(tags)))
        self._names[node_id] = name
        return self

    def value(self, node_id, label_id, text):
        """Fill a plain field value; repeated calls make a multi-valued field."""
        return self._add_value(node_id, label_id, text, None)

    def link(self, node_id, label_id, target_id):
        """Fill a reference field value pointing at target_id."""
        return self._add_value(node_id, label_id, self._names.get(target_id, ""), target_id)

    def _add_value(self, node_id, label_id, text, target_id):
        key = (node_id, label_id)
        order = self._orders.get(key, 0)
        self._orders[key] = order + 1
        self.values.append(dict(parent_id=node_id, field_def_id=label_id,
                                field_name=self._field_names[label_id],
                                value_text=str(text), value_node_id=target_id,
                                value_order=order))
        return self

    def ref(self, from_node, to_node):
        self.refs.append((from_node, to_node))
        return self

    def build(self):
        """Write everything to the database and return it."""
        with self.db.session() as session:
            tags = {t["id"]: Supertag(**t) for t in self.tags}
            session.add_all(tags.values())
            for child_id, parent_id in self.parents:
                tags[child_id].parents.append(tags[parent_id])
            session.add_all(FieldDefinition(**f) for f in self.fields)

            for data in self.nodes:
                data = dict(data)
                tag_ids = data.pop("tags")
                session.add(Node(tags=[tags[t] for t in tag_ids], **data))
            session.flush()

            session.add_all(FieldValue(**v) for v in self.values)
            session.add_all(Reference(from_node=a, to_node=b) for a, b in self.refs)
        return self.db


def at(day, month=3, hour=9):
    """A 2024 timestamp; tasks are created at 09:00 unless stated otherwise."""
    return datetime(2024, month, day, hour, 0, 0)


def build_task_graph(db):
    """
    Tasks, people, a project and meetings.

    Task statuses: Done x4 (February), In Progress x2, Open x3 and one
    task without a status (March).
    """
    b = GraphBuilder(db)

    b.tag("tg-person", "person").field("tg-person", "f-email", "Email", "email")
    b.tag("tg-entity", "entity")
    b.field("tg-entity", "f-owner", "Owner", "reference", target="tg-person")
    b.field("tg-entity", "f-entity-priority", "Priority", "text")
    b.tag("tg-task", "task", parents=["tg-entity"])
    b.field("tg-task", "f-status", "Status", "options")
    b.field("tg-task", "f-priority", "Priority", "options")
    b.field("tg-task", "f-points", "Points", "number")
    b.field("tg-task", "f-due", "Due", "date")
    b.field("tg-task", "f-assignee", "Assignee", "reference", target="tg-person")
    b.field("tg-task", "f-project", "Project", "reference", target="tg-project")
    b.tag("tg-bug", "bug", parents=["tg-task"])
    b.field("tg-bug", "f-severity", "Severity", "options")
    b.tag("tg-project", "project")
    b.field("tg-project", "f-lead", "Lead", "reference", target="tg-person")
    b.tag("tg-meeting", "meeting")
    b.field("tg-meeting", "f-attendees", "Attendees", "reference", target="tg-person")

    b.node("p-alice", "Alice", tags=["tg-person"], created=at(10, month=1))
    b.node("p-bob", "Bob", tags=["tg-person"], created=at(11, month=1))
    b.node("p-carol", "Carol", tags=["tg-person"], created=at(12, month=1))
    b.value("p-alice", "f-email", "alice@example.com")

    b.node("pr-apollo", "Apollo", tags=["tg-project"], created=at(5, month=1))
    b.link("pr-apollo", "f-lead", "p-alice")

    tasks = [
        ("t01", "Write spec", at(1, month=2), "Done", "High", "3", "p-alice"),
        ("t02", "Review spec", at(3, month=2), "Done", "Low", "5", "p-bob"),
        ("t03", "Ship beta", at(10, month=2), "Done", "High", "8", "p-alice"),
        ("t04", "Fix login", at(20, month=2), "Done", "Medium", "2", None),
        ("t05", "Plan sprint", at(1), "In Progress", "High", "1", "p-bob"),
        ("t06", "Draft roadmap", at(2), "In Progress", "Low", "13", None),
        ("t07", "Update docs", at(5), "Open", "Medium", "3", "p-carol"),
        ("t08", "Triage issues", at(8), "Open", "High", "n/a", None),
        ("t09", "Refactor parser", at(10), "Open", "Low", None, None),
        ("t10", "Clean backlog", at(14), None, None, None, None),
    ]
    for node_id, name, created, status, priority, points, assignee in tasks:
        b.node(node_id, name, tags=["tg-task"], created=created,
               updated=created + timedelta(days=1))
        if status:
            b.value(node_id, "f-status", status)
        if priority:
            b.value(node_id, "f-priority", priority)
        if points:
            b.value(node_id, "f-points", points)
        if assignee:
            b.link(node_id, "f-assignee", assignee)

    b.link("t01", "f-project", "pr-apollo")
    b.value("t01", "f-due", "2024-03-01")
    b.value("t05", "f-due", "2024-03-20")
    b.value("t07", "f-due", "2024-04-01")

    b.node("b01", "Crash on save", tags=["tg-bug"], created=at(12))
    b.value("b01", "f-status", "Open")
    b.value("b01", "f-severity", "Critical")

    b.node("m01", "Kickoff", tags=["tg-meeting"], created=at(12))
    b.link("m01", "f-attendees", "p-alice").link("m01", "f-attendees", "p-bob")
    b.node("m02", "Retro", tags=["tg-meeting"], created=at(13))
    b.link("m02", "f-attendees", "p-bob").link("m02", "f-attendees", "p-carol")

    b.node("c01", "Outline sections", created=at(2, month=2), parent="t01")
    b.node("tp01", "Status row", created=at(2, month=2), parent="t01", doc_type=DOC_TYPE_TUPLE)

    b.ref("t07", "t01")
    return b.build()


def build_diamond_graph(db):
    """A -> B, A -> C, B -> D, C -> D, D -> A (cycle), D -> E over the Links field."""
    b = GraphBuilder(db)
    b.tag("tg-doc", "doc")
    b.field("tg-doc", "f-links", "Links", "reference", target="tg-doc")
    for i, name in enumerate("ABCDE"):
        b.node(name.lower(), name, tags=["tg-doc"], created=at(1 + i))
    for src, dst in [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d"), ("d", "a"), ("d", "e")]:
        b.link(src, "f-links", dst)
    return b.build()


# ============ Fixtures ============

@pytest.fixture
def db(tmp_path):
    """An empty, writable store."""
    database = Database(path=str(tmp_path / "test.db"), read_only=False)
    yield database
    database.close()


@pytest.fixture
def builder(db):
    return GraphBuilder(db)


@pytest.fixture
def task_db(db):
    return build_task_graph(db)


@pytest.fixture
def diamond_db(db):
    return build_diamond_graph(db)


@pytest.fixture
def items_db(db):
    """25 item nodes created an hour apart (i01 oldest)."""
    b = GraphBuilder(db)
    b.tag("tg-item", "item")
    for i in range(1, 26):
        b.node(f"i{i:02d}", f"Item {i}", tags=["tg-item"],
               created=datetime(2024, 1, 1) + timedelta(hours=i))
    return b.build()


@pytest.fixture
def config():
    return NotegraphConfig()


@pytest.fixture
def service(task_db, config):
    return QueryService(task_db, config=config, clock=fixed_clock)


@pytest.fixture
def diamond_service(diamond_db, config):
    return QueryService(diamond_db, config=config, clock=fixed_clock)


@pytest.fixture
def items_service(items_db, config):
    return QueryService(items_db, config=config, clock=fixed_clock)
