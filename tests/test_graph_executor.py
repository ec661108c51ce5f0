"""
Tests for notegraph/query/graph_executor.py traversal, projection and ranking.
"""
from unittest.mock import MagicMock

import pytest

from notegraph.config import NotegraphConfig
from notegraph.query import QueryService
from notegraph.query.errors import PlanError
from notegraph.query.graph_executor import Traversal

from conftest import fixed_clock


class TestTraversalState:

    def test_visit_records_distance_and_predecessor(self):
        state = Traversal(budget=10)
        assert state.visit("a", None, 0)
        assert state.visit("b", "a", 1)
        assert state.visit("c", "b", 1)
        assert state.distance == {"a": 0, "b": 1, "c": 2}
        assert state.predecessor == {"b": "a", "c": "b"}

    def test_budget(self):
        state = Traversal(budget=1)
        assert state.visit("a", None, 0)
        assert not state.visit("b", "a", 1)
        assert state.truncated
        assert "b" not in state.visited

    def test_ancestor_at(self):
        state = Traversal(budget=10)
        state.visit("a", None, 0)
        state.visit("b", "a", 1)
        state.visit("c", "b", 1)
        state.visit("d", "c", 2)
        assert state.ancestor_at("d", 2) == "d"
        assert state.ancestor_at("d", 1) == "c"
        assert state.ancestor_at("d", 0) == "a"
        assert state.ancestor_at("a", 1) is None


class TestDiamond:
    """A -> B, A -> C, B -> D, C -> D, D -> A, D -> E over Links."""

    def test_shared_descendant_is_reached_once(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = A -> Links TO doc DEPTH 2")
        assert result.ids() == ["b", "c", "d"]
        assert result.count == 3
        assert not result.truncated

    def test_depth_one(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = A -> Links")
        assert result.ids() == ["b", "c"]

    def test_cycle_terminates(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = A -> Links DEPTH 10")
        assert result.ids() == ["b", "c", "d", "e"]

    def test_incoming(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = D <- Links")
        assert result.ids() == ["b", "c"]

    def test_path_distances(self, diamond_service):
        result = diamond_service.graph(
            "FIND doc WHERE name = A -> Links DEPTH 3", include_paths=True
        )
        assert result.paths == {"b": 1, "c": 1, "d": 2, "e": 3}
        assert diamond_service.graph("FIND doc WHERE name = A -> Links").paths is None

    def test_step_where_filters_results_but_not_expansion(self, diamond_service):
        result = diamond_service.graph(
            "FIND doc WHERE name = A -> Links DEPTH 3 WHERE name != D"
        )
        assert result.ids() == ["b", "c", "e"]

    def test_budget_truncates(self, diamond_db):
        service = QueryService(diamond_db, config=NotegraphConfig(traversal_node_budget=3),
                               clock=fixed_clock)
        result = service.graph("FIND doc WHERE name = A -> Links DEPTH 3")
        assert result.truncated
        assert result.ids() == ["b", "c"]
        assert result.warning
        assert result.to_dict()["truncated"] is True

    def test_budget_applies_to_start_set(self, diamond_db):
        service = QueryService(diamond_db, config=NotegraphConfig(traversal_node_budget=2),
                               clock=fixed_clock)
        result = service.graph("FIND doc")
        assert result.ids() == ["a", "b"]
        assert result.truncated

    def test_deterministic(self, diamond_service):
        query = "FIND doc -> Links DEPTH 2"
        first = diamond_service.graph(query, include_paths=True).to_dict()
        assert diamond_service.graph(query, include_paths=True).to_dict() == first

    def test_limit(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = A -> Links DEPTH 3 LIMIT 2")
        assert result.ids() == ["b", "c"]
        assert result.count == 4
        assert result.has_more


class TestRanking:

    def test_rank_by_distance(self, diamond_service):
        result = diamond_service.graph(
            "FIND doc WHERE name = A -> Links DEPTH 3", rank=True
        )
        assert result.ids()[-1] == "e"
        scores = result.scores
        assert scores["b"] > scores["d"] > scores["e"]

    def test_rank_with_embeddings(self, diamond_db, config):
        embeddings = MagicMock()
        embeddings.vector_for_text.return_value = [1.0, 0.0]
        vectors = {"b": [0.0, 1.0], "c": [0.0, 1.0], "d": [1.0, 0.0]}
        embeddings.vector_for_node.side_effect = lambda node_id: vectors.get(node_id)

        service = QueryService(diamond_db, config=config, clock=fixed_clock, embeddings=embeddings)
        result = service.graph("FIND doc WHERE name = A -> Links DEPTH 2", rank_text="query")

        assert result.ids()[0] == "d"
        embeddings.vector_for_text.assert_called_once_with("query")

    def test_rank_text_without_embeddings_falls_back(self, diamond_service):
        result = diamond_service.graph("FIND doc WHERE name = A -> Links DEPTH 2", rank_text="x")
        # Same distance for B and C, so the newer C ranks first
        assert result.ids() == ["c", "b", "d"]
        assert set(result.scores) == {"b", "c", "d"}


class TestTaskGraph:
    """Traversals over the task dataset."""

    def test_outgoing_reference_with_alias_projection(self, service):
        result = service.graph("FIND task -> Assignee TO person RETURN name, task.name")
        assert result.columns == ["name", "task.name"]
        assert result.results == [
            {"name": "Alice", "task.name": "Write spec"},
            {"name": "Bob", "task.name": "Review spec"},
            {"name": "Carol", "task.name": "Update docs"},
        ]

    def test_connected_to_via(self, service):
        result = service.graph(
            "FIND meeting CONNECTED TO person VIA Attendees RETURN name, meeting.name AS met_at"
        )
        assert [(r["name"], r["met_at"]) for r in result] == [
            ("Alice", "Kickoff"), ("Bob", "Kickoff"), ("Carol", "Retro"),
        ]

    def test_connected_to_via_field_of_target_tag(self, service):
        result = service.graph("FIND person CONNECTED TO meeting VIA Attendees RETURN name")
        assert result.ids() == ["m01", "m02"]
        assert [r["name"] for r in result] == ["Kickoff", "Retro"]

    def test_connected_to_follows_incoming_edges(self, service):
        assert service.graph("FIND person CONNECTED TO meeting").ids() == ["m01", "m02"]

    def test_incoming_reference(self, service):
        result = service.graph("FIND person WHERE name = Alice <- Assignee TO task")
        assert result.ids() == ["t01", "t03"]

    def test_start_only(self, service):
        result = service.graph("FIND task WHERE Status = Done RETURN name")
        assert [r["name"] for r in result] == ["Write spec", "Review spec", "Ship beta", "Fix login"]

    def test_default_projection_is_full(self, service):
        row = service.graph("FIND project")[0]
        assert set(row) == {"id", "name", "created", "updated", "tags", "fields"}
        assert row["fields"] == {"Lead": "Alice"}

    def test_resolve_references(self, service):
        row = service.graph("FIND project RETURN Lead", resolve_references=True)[0]
        assert row == {"Lead": {"id": "p-alice", "name": "Alice"}}

    def test_child_edge_skips_structural_nodes(self, service):
        assert service.graph("FIND task -> child").ids() == ["c01"]

    def test_child_edge_incoming(self, service):
        result = service.graph("FIND * WHERE name = 'Outline sections' <- child TO task RETURN name")
        assert result.results == [{"name": "Write spec"}]

    def test_inline_reference_edge(self, service):
        assert service.graph("FIND task WHERE name = 'Update docs' -> ref").ids() == ["t01"]

    def test_any_edge(self, service):
        result = service.graph("FIND project CONNECTED TO *")
        assert result.ids() == ["p-alice", "t01"]

    def test_multi_step(self, service):
        result = service.graph(
            "FIND meeting WHERE name = Retro -> Attendees TO person <- Assignee TO task RETURN name"
        )
        assert [r["name"] for r in result] == ["Review spec", "Plan sprint", "Update docs"]

    def test_terminal_filter(self, service):
        result = service.graph("FIND task -> Assignee TO person WHERE Email exists")
        assert result.ids() == ["p-alice"]

    def test_target_tag_filters(self, service):
        assert service.graph("FIND task -> Assignee TO project").ids() == []

    def test_invalid_edge(self, service):
        with pytest.raises(PlanError):
            service.graph("FIND task -> Status TO person")


class TestGraphAggregates:

    def test_count_alias(self, service):
        result = service.graph("FIND task -> Assignee TO person RETURN COUNT(person) AS people")
        assert result.results == [{"people": 3}]
        assert result.columns == ["people"]

    def test_truncated_aggregate_carries_warning(self, diamond_db):
        service = QueryService(diamond_db, config=NotegraphConfig(traversal_node_budget=3),
                               clock=fixed_clock)
        result = service.graph("FIND doc WHERE name = A -> Links DEPTH 3 RETURN COUNT(doc) AS n")
        assert result.truncated
        assert result.warning.startswith("Traversal stopped after 3 nodes")

    def test_count_start_alias(self, service):
        result = service.graph("FIND task -> Assignee TO person RETURN COUNT(task)")
        assert result.results == [{"count_task": 10}]

    def test_count_star(self, service):
        result = service.graph("FIND meeting CONNECTED TO person VIA Attendees RETURN COUNT(*) AS n")
        assert result[0]["n"] == 3

    def test_count_field(self, service):
        result = service.graph("FIND task RETURN COUNT(Assignee) AS assigned")
        assert result[0]["assigned"] == 5

    def test_sum_and_avg(self, service):
        result = service.graph(
            "FIND task WHERE Status = Done RETURN SUM(Points) AS total, AVG(Points) AS mean"
        )
        assert result[0] == {"total": 18.0, "mean": 4.5}

    def test_sum_skips_non_numeric(self, service):
        result = service.graph("FIND task WHERE Status = Open RETURN SUM(Points) AS total")
        assert result[0]["total"] == 3.0

    def test_sum_without_values(self, service):
        result = service.graph("FIND task WHERE Status = Nope RETURN SUM(Points) AS total")
        assert result[0]["total"] is None
