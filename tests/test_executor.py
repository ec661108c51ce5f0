"""
Tests for unified query execution (notegraph/query/executor.py, filters.py, fields.py).

The task dataset is described in conftest.build_task_graph; the clock is
fixed at 2024-03-15 12:00 UTC.
"""
from datetime import datetime

import pytest

from notegraph.query import QueryService
from notegraph.query.errors import PlanError

ALL_TASKS_NEWEST_FIRST = ["t10", "t09", "t08", "t07", "t06", "t05", "t04", "t03", "t02", "t01"]


def ids(result):
    return result.ids()


class TestBasicQueries:

    def test_find_all_tasks(self, service):
        result = service.query({"find": "task"})
        assert result.count == 10
        assert ids(result) == ALL_TASKS_NEWEST_FIRST
        assert result.has_more is False

    def test_default_projection(self, service):
        row = service.query({"find": "task", "where": {"name": "Write spec"}})[0]
        assert row == {
            "id": "t01",
            "name": "Write spec",
            "created": "2024-02-01T09:00:00",
            "updated": "2024-02-02T09:00:00",
        }

    def test_wildcard_excludes_structural_nodes(self, service):
        result = service.query({"find": "*"})
        assert result.count == 18
        assert "tp01" not in ids(result)

    def test_no_matches(self, service):
        result = service.query({"find": "task", "where": {"Status": "Nope"}})
        assert result.count == 0
        assert len(result) == 0
        assert result.has_more is False

    def test_text_query(self, service):
        result = service.query("find task where Status = Done order by name")
        assert [r["name"] for r in result] == ["Fix login", "Review spec", "Ship beta", "Write spec"]

    def test_to_dict(self, service):
        data = service.query({"find": "project"}).to_dict()
        assert set(data) == {"results", "count", "hasMore"}
        assert data["count"] == 1

    def test_unknown_tag_raises(self, service):
        with pytest.raises(PlanError):
            service.query({"find": "tsak"})


class TestFieldFilters:

    @pytest.mark.parametrize("where,expected", [
        ({"Status": "Done"}, {"t01", "t02", "t03", "t04"}),
        ({"Status": "done"}, {"t01", "t02", "t03", "t04"}),
        ({"Status": {"neq": "Done"}}, {"t05", "t06", "t07", "t08", "t09", "t10"}),
        ({"Status": ["Open", "In Progress"]}, {"t05", "t06", "t07", "t08", "t09"}),
        ({"Status": {"contains": "prog"}}, {"t05", "t06"}),
        ({"Points": {"gte": 5}}, {"t02", "t03", "t06"}),
        ({"Points": {"gte": "5"}}, {"t02", "t03", "t06"}),
        ({"Points": {"gte": 2, "lte": 5}}, {"t01", "t02", "t04", "t07"}),
        ({"Assignee": {"exists": True}}, {"t01", "t02", "t03", "t05", "t07"}),
        ({"Assignee": {"exists": False}}, {"t04", "t06", "t08", "t09", "t10"}),
        ({"Assignee": "alice"}, {"t01", "t03"}),
        ({"Assignee": "p-alice"}, {"t01", "t03"}),
        ({"Assignee": ["Alice", "p-bob"]}, {"t01", "t02", "t03", "t05"}),
        ({"Due": {"before": "2024-03-15"}}, {"t01"}),
        ({"Due": {"after": "2024-03-01"}}, {"t05", "t07"}),
        ({"Due": {"after": "7d"}}, {"t05", "t07"}),
    ])
    def test_field_conditions(self, service, where, expected):
        result = service.query({"find": "task", "where": where})
        assert set(ids(result)) == expected
        assert result.count == len(expected)

    def test_non_numeric_values_never_match_ranges(self, service):
        assert ids(service.query({"find": "task", "where": {"Points": {"lt": 1}}})) == []
        result = service.query({"find": "task", "where": {"Points": {"gt": -1}}})
        assert result.count == 7
        assert "t08" not in ids(result)

    def test_non_numeric_values_never_match_text_ranges(self, service):
        result = service.query("find task where Points < 2")
        assert set(ids(result)) == {"t05"}

    def test_or_group(self, service):
        result = service.query({"find": "task", "where": {
            "or": [{"Status": "Open"}, {"Priority": "High"}],
        }})
        assert set(ids(result)) == {"t01", "t03", "t05", "t07", "t08", "t09"}

    def test_not_group(self, service):
        result = service.query({"find": "task", "where": {"not": {"Status": "Done"}}})
        assert result.count == 6

    def test_negated_or_in_text(self, service):
        result = service.query("find task where not (Status = Done or Status = Open)")
        assert set(ids(result)) == {"t05", "t06", "t10"}

    def test_inherited_field_filter(self, service):
        assert ids(service.query({"find": "bug", "where": {"Status": "Open"}})) == ["b01"]

    def test_wildcard_field_filter(self, service):
        result = service.query({"find": "*", "where": {"Status": "Open"}})
        assert set(ids(result)) == {"t07", "t08", "t09", "b01"}

    def test_email_contains(self, service):
        assert ids(service.query({"find": "person", "where": {"Email": {"contains": "EXAMPLE"}}})) == ["p-alice"]


class TestAttributeFilters:

    @pytest.mark.parametrize("where,expected", [
        ({"name": {"contains": "SPEC"}}, {"t01", "t02"}),
        ({"name": {"contains": "%"}}, set()),
        ({"name": "write SPEC"}, {"t01"}),
        ({"name": {"gt": "S"}}, {"t01", "t03", "t07", "t08"}),
        ({"id": "t05"}, {"t05"}),
        ({"id": ["t01", "t02"]}, {"t01", "t02"}),
    ])
    def test_name_and_id(self, service, where, expected):
        assert set(ids(service.query({"find": "task", "where": where}))) == expected

    @pytest.mark.parametrize("where,expected_count", [
        ({"created": {"after": "7d"}}, 3),
        ({"created": {"gte": "2w"}}, 6),
        ({"created": "yesterday"}, 1),
        ({"created": "today"}, 0),
        ({"created": "2024-03-01"}, 1),
        ({"created": {"neq": "2024-03-01"}}, 9),
        ({"created": {"gte": "2024-03-10T09:00:00"}}, 2),
        ({"updated": "2024-03-15"}, 1),
        ({"created": "banana"}, 0),
        ({"created": {"neq": "banana"}}, 10),
    ])
    def test_dates(self, service, where, expected_count):
        assert service.query({"find": "task", "where": where}).count == expected_count

    def test_relative_dates_follow_the_clock(self, task_db, config):
        later = QueryService(task_db, config=config, clock=lambda: datetime(2024, 4, 30))
        assert later.query({"find": "task", "where": {"created": {"after": "7d"}}}).count == 0

    def test_wildcard_relative_date(self, service):
        result = service.query("find * where created > 7d")
        assert set(ids(result)) == {"t08", "t09", "t10", "b01", "m01", "m02"}


class TestOrdering:

    def test_number_field_descending(self, service):
        result = service.query({"find": "task", "orderBy": "-Points"})
        assert ids(result)[:5] == ["t06", "t03", "t02", "t01", "t07"]
        assert ids(result)[-2:] == ["t09", "t10"]

    def test_text_field_ties_break_by_id(self, service):
        result = service.query({"find": "task", "orderBy": "Status"})
        assert ids(result) == ["t01", "t02", "t03", "t04", "t05", "t06", "t07", "t08", "t09", "t10"]

    def test_missing_values_sort_last_descending(self, service):
        result = service.query({"find": "task", "orderBy": "-Status"})
        assert ids(result)[-1] == "t10"

    def test_attribute_order(self, service):
        result = service.query({"find": "task", "orderBy": "created"})
        assert ids(result) == list(reversed(ALL_TASKS_NEWEST_FIRST))

    def test_identical_timestamps_break_by_id(self, builder, config):
        same = datetime(2024, 1, 1)
        builder.tag("tg-note", "note")
        for node_id in ("z3", "z1", "z2"):
            builder.node(node_id, node_id, tags=["tg-note"], created=same)
        builder.node("z0", "z0", tags=["tg-note"])
        db = builder.build()

        service = QueryService(db, config=config)
        first = ids(service.query({"find": "note"}))
        assert first == ["z1", "z2", "z3", "z0"]
        assert ids(service.query({"find": "note"})) == first

    def test_repeated_execution_is_stable(self, service):
        query = {"find": "*", "orderBy": "name"}
        assert ids(service.query(query)) == ids(service.query(query))


class TestPagination:

    def test_last_page(self, items_service):
        result = items_service.query({"find": "item", "limit": 10, "offset": 20})
        assert len(result) == 5
        assert result.count == 25
        assert result.has_more is False
        assert ids(result) == ["i05", "i04", "i03", "i02", "i01"]

    def test_middle_page(self, items_service):
        result = items_service.query({"find": "item", "limit": 10, "offset": 10})
        assert len(result) == 10
        assert result.has_more is True

    def test_past_the_end(self, items_service):
        result = items_service.query({"find": "item", "limit": 10, "offset": 30})
        assert len(result) == 0
        assert result.has_more is False

    def test_limit_override(self, items_service):
        result = items_service.query({"find": "item"}, limit=3)
        assert ids(result) == ["i25", "i24", "i23"]
        assert result.has_more is True


class TestProjection:

    def test_select_fields(self, service):
        row = service.query({
            "find": "task",
            "where": {"name": "Fix login"},
            "select": ["name", "Status", "fields.Points", "Assignee"],
        })[0]
        assert row == {"name": "Fix login", "Status": "Done", "fields.Points": "2", "Assignee": None}

    def test_resolve_references(self, service):
        query = {"find": "task", "where": {"id": "t01"}, "select": ["Assignee", "Project"]}
        plain = service.query(query)[0]
        assert plain == {"Assignee": "Alice", "Project": "Apollo"}

        resolved = service.query(query, resolve_references=True)[0]
        assert resolved["Assignee"] == {"id": "p-alice", "name": "Alice"}
        assert resolved["Project"] == {"id": "pr-apollo", "name": "Apollo"}

    def test_select_star(self, service):
        row = service.query({"find": "task", "where": {"id": "t01"}, "select": "*"})[0]
        assert row["tags"] == ["task"]
        assert row["fields"] == {
            "Status": "Done", "Priority": "High", "Points": "3",
            "Assignee": "Alice", "Project": "Apollo", "Due": "2024-03-01",
        }

    def test_multi_valued_field(self, service):
        row = service.query({"find": "meeting", "where": {"id": "m01"}, "select": ["Attendees"]})[0]
        assert row["Attendees"] == ["Alice", "Bob"]

    def test_parent_paths(self, service):
        row = service.query({
            "find": "*",
            "where": {"name": "Outline sections"},
            "select": ["parent", "parent.name", "parent.tags"],
        })[0]
        assert row == {"parent": "t01", "parent.name": "Write spec", "parent.tags": ["task"]}

    def test_unresolvable_paths_are_none(self, service):
        row = service.query({"find": "task", "where": {"id": "t01"}, "select": ["foo.bar", "Nope"]})[0]
        assert row == {"foo.bar": None, "Nope": None}
