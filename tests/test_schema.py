"""
Tests for notegraph/schema.py: tag lookup, inheritance and field resolution.
"""
import pytest

from notegraph.schema import CatalogSnapshot, SchemaCatalog, TagInfo, FieldInfo, MAX_INHERITANCE_DEPTH


def tag(tag_id, name, parents=(), count=0):
    return TagInfo(id=tag_id, name=name, normalized_name=name.lower(),
                   instance_count=count, parent_ids=tuple(parents))


def fld(tag_id, label_id, name, data_type="text", order=0, target=None):
    return FieldInfo(field_label_id=label_id, field_name=name, tag_id=tag_id,
                     inferred_data_type=data_type, field_order=order,
                     target_supertag_id=target, origin_tag_id=tag_id)


@pytest.fixture
def snapshot():
    """
    Inheritance:

        employee -> person -> entity
        employee -> worker -> entity
    """
    tags = [
        tag("t-entity", "entity"),
        tag("t-person", "Person", ["t-entity"]),
        tag("t-worker", "worker", ["t-entity"]),
        tag("t-employee", "employee", ["t-person", "t-worker"], count=3),
    ]
    fields = [
        fld("t-entity", "f-id", "Identifier"),
        fld("t-entity", "f-entity-email", "Email"),
        fld("t-person", "f-email", "Email", "email"),
        fld("t-person", "f-phone", "Phone"),
        fld("t-worker", "f-phone-work", "Phone"),
        fld("t-worker", "f-manager", "Manager", "reference", target="t-employee"),
        fld("t-employee", "f-salary", "Salary", "number", order=1),
        fld("t-employee", "f-start", "Start date", "date", order=0),
    ]
    return CatalogSnapshot(tags, fields)


class TestTags:

    def test_find_tag_is_case_insensitive(self, snapshot):
        assert snapshot.find_tag("PERSON").id == "t-person"
        assert snapshot.find_tag("#person").id == "t-person"

    def test_unknown_tag(self, snapshot):
        assert snapshot.find_tag("nope") is None
        assert not snapshot.has_tag("nope")

    def test_tag_names_sorted(self, snapshot):
        assert snapshot.tag_names() == ["employee", "entity", "Person", "worker"]

    def test_duplicate_names_pick_canonical_tag(self):
        snap = CatalogSnapshot(
            [tag("a", "note"), tag("b", "note", ["x"]), tag("x", "base")],
            [fld("a", "f1", "Body")],
        )
        assert len(snap.find_tags("note")) == 2
        assert snap.find_tag("note").id == "b"

    def test_duplicate_names_prefer_fields_then_instances(self):
        snap = CatalogSnapshot(
            [tag("a", "note", count=10), tag("b", "note", count=1), tag("c", "note", count=50)],
            [fld("b", "f1", "Body")],
        )
        assert snap.find_tag("note").id == "b"


class TestInheritance:

    def test_ancestors_breadth_first(self, snapshot):
        assert snapshot.ancestors("t-employee") == [
            ("t-person", 1), ("t-worker", 1), ("t-entity", 2),
        ]

    def test_cycle_terminates(self):
        snap = CatalogSnapshot(
            [tag("a", "a", ["b"]), tag("b", "b", ["c"]), tag("c", "c", ["a"])],
            [fld("c", "f-c", "Deep")],
        )
        assert snap.ancestors("a") == [("b", 1), ("c", 2)]
        assert snap.resolve_field("a", "Deep").depth == 2

    def test_self_parent_is_ignored(self):
        snap = CatalogSnapshot([tag("a", "a", ["a"])], [])
        assert snap.ancestors("a") == []

    def test_depth_is_capped(self):
        n = MAX_INHERITANCE_DEPTH + 5
        tags = [tag(f"t{i}", f"t{i}", [f"t{i + 1}"] if i < n else []) for i in range(n + 1)]
        snap = CatalogSnapshot(tags, [fld(f"t{n}", "f-root", "Root")])
        assert len(snap.ancestors("t0")) == MAX_INHERITANCE_DEPTH
        assert snap.resolve_field("t0", "Root") is None

    def test_effective_fields_own_first(self, snapshot):
        names = snapshot.field_names("t-employee")
        assert names[:2] == ["Start date", "Salary"]
        assert set(names) == {"Start date", "Salary", "Email", "Phone", "Manager", "Identifier"}

    def test_closer_ancestor_wins(self, snapshot):
        email = snapshot.resolve_field("t-employee", "email")
        assert email.field_label_id == "f-email"
        assert email.origin_tag_id == "t-person"
        assert email.depth == 1
        assert email.is_inherited

    def test_first_parent_wins_at_equal_depth(self, snapshot):
        assert snapshot.resolve_field("t-employee", "Phone").field_label_id == "f-phone"

    def test_inherited_field_reports_origin(self, snapshot):
        ident = snapshot.resolve_field("t-employee", "Identifier")
        assert ident.origin_tag_id == "t-entity"
        assert ident.depth == 2
        assert ident.tag_id == "t-employee"

    def test_own_field(self, snapshot):
        salary = snapshot.resolve_field("t-employee", "Salary")
        assert salary.depth == 0
        assert not salary.is_inherited

    def test_effective_fields_are_memoized_copies(self, snapshot):
        first = snapshot.effective_fields("t-employee")
        first.clear()
        assert snapshot.effective_fields("t-employee")


class TestFieldQueries:

    def test_fields_named_spans_tags(self, snapshot):
        labels = {f.field_label_id for f in snapshot.fields_named("phone")}
        assert labels == {"f-phone", "f-phone-work"}

    def test_reference_fields(self, snapshot):
        assert [f.field_name for f in snapshot.reference_fields("t-employee")] == ["Manager"]
        assert [f.field_label_id for f in snapshot.reference_fields()] == ["f-manager"]

    def test_target_bound_text_field_links_nodes(self):
        snap = CatalogSnapshot(
            [tag("t-note", "note"), tag("t-topic", "topic")],
            [fld("t-note", "f-topic", "Topic", target="t-topic"), fld("t-note", "f-body", "Body")],
        )
        assert [f.field_label_id for f in snap.reference_fields("t-note")] == ["f-topic"]

    def test_field_type(self, snapshot):
        assert snapshot.field_type("employee", "Salary") == "number"
        assert snapshot.field_type("employee", "Email") == "email"
        assert snapshot.field_type("employee", "Nope") is None
        assert snapshot.field_type("nope", "Salary") is None

    def test_reserved_names(self, snapshot):
        assert snapshot.is_reserved("Created")
        assert not snapshot.is_reserved("Status")

    def test_all_field_names(self, snapshot):
        assert "Start date" in snapshot.all_field_names()


class TestSchemaCatalog:
    """Test loading snapshots from the store."""

    def test_loads_tags_fields_and_counts(self, task_db):
        snap = SchemaCatalog(task_db).snapshot()
        task = snap.find_tag("task")
        assert task.instance_count == 10
        assert task.parent_ids == ("tg-entity",)
        assert snap.resolve_field(task.id, "Owner").origin_tag_id == "tg-entity"

    def test_own_definition_overrides_inherited_one(self, task_db):
        snap = SchemaCatalog(task_db).snapshot()
        priority = snap.resolve_field("tg-task", "Priority")
        assert priority.field_label_id == "f-priority"
        assert snap.resolve_field("tg-bug", "Priority").field_label_id == "f-priority"

    def test_snapshot_is_cached_until_invalidated(self, task_db):
        catalog = SchemaCatalog(task_db)
        first = catalog.snapshot()
        assert catalog.snapshot() is first
        catalog.invalidate()
        assert catalog.snapshot() is not first
