"""DependencyResolver unit tests.

Covers selection expansion, cycle detection, startup ordering and the
add/remove validation used by the installer and the monitoring console.
"""

import pytest

from conftest import make_catalog
from stack_orchestration.core.errors import Invalid, Ok
from stack_orchestration.profiles.resolver import DependencyResolver, HostResources


@pytest.fixture
def resolver(catalog):
    return DependencyResolver(catalog)


def codes(problems):
    return [p.code for p in problems]


def app(pid, **extra):
    return {"id": pid, "name": pid.upper(), "category": "application", **extra}


# ===== Graph and ordering =====

def test_build_graph_pulls_in_transitive_dependencies(resolver):
    result = resolver.build_graph(["k-social-app", "kaspa-node"])

    assert isinstance(result, Ok)
    graph = result.value
    assert graph.nodes == ["kaspa-node", "k-social-app", "k-indexer-bundle"]
    assert graph.edges["k-social-app"] == ["k-indexer-bundle"]
    assert graph.edges["k-indexer-bundle"] == ["kaspa-node"]
    assert graph.requested == ["k-social-app", "kaspa-node"]


def test_prerequisite_edges_only_towards_included_alternatives(resolver):
    graph = resolver.build_graph(["kasia-indexer", "kaspa-archive-node"]).value

    assert graph.edges["kasia-indexer"] == ["kaspa-archive-node"]


def test_unknown_profile_is_invalid(resolver):
    result = resolver.build_graph(["kaspa-node", "bogus"])

    assert isinstance(result, Invalid)
    assert codes(result.problems) == ["unknown_profile"]
    assert result.problems[0].details == {"profile": "bogus"}


def test_startup_order_dependencies_first(resolver):
    order = resolver.startup_order_for(["k-social-app", "kaspa-node"])

    assert [p.id for p in order.value] == ["kaspa-node", "k-indexer-bundle", "k-social-app"]


def test_startup_order_ties_follow_catalog_order(resolver):
    order = resolver.startup_order_for(["management", "kaspa-stratum", "kasia-app", "kaspa-node"])

    assert [p.id for p in order.value] == ["kaspa-node", "kasia-app", "kaspa-stratum", "management"]


def test_service_startup_order_respects_in_profile_order(resolver):
    services = resolver.service_startup_order(["kaspa-explorer-bundle", "kaspa-node"]).value

    assert [s.name for s in services] == [
        "kaspa-node", "timescaledb-explorer", "simply-kaspa-indexer", "kaspa-explorer",
    ]


def test_cycle_reported_once_and_order_fails():
    catalog = make_catalog(
        app("a", dependencies=["b"]),
        app("b", dependencies=["c"]),
        app("c", dependencies=["a"]),
        app("d"),
    )
    resolver = DependencyResolver(catalog)
    graph = resolver.build_graph(["a", "d"]).value

    assert resolver.detect_cycles(graph) == [["a", "b", "c", "a"]]
    order = resolver.compute_startup_order(graph)
    assert isinstance(order, Invalid)
    assert codes(order.problems) == ["circular_dependency"]
    assert order.problems[0].details["cycle"] == ["a", "b", "c", "a"]


def test_two_separate_cycles_both_reported():
    catalog = make_catalog(
        app("a", dependencies=["b"]),
        app("b", dependencies=["a"]),
        app("c", dependencies=["d"]),
        app("d", dependencies=["c"]),
    )
    resolver = DependencyResolver(catalog)

    order = resolver.startup_order_for(["a", "c"])

    assert isinstance(order, Invalid)
    assert [p.details["cycle"] for p in order.problems] == [["a", "b", "a"], ["c", "d", "c"]]


def test_acyclic_graph_has_no_cycles(resolver):
    graph = resolver.build_graph(resolver.catalog.ids).value

    assert resolver.detect_cycles(graph) == []
    assert isinstance(resolver.compute_startup_order(graph), Ok)


# ===== Addition =====

def test_add_to_empty_installation_reports_missing_prerequisite(resolver):
    result = resolver.validate_addition("kasia-indexer", [])

    assert not result.can_add
    assert codes(result.errors) == ["missing_prerequisite"]
    assert result.errors[0].details["anyOf"] == ["kaspa-node", "kaspa-archive-node"]
    assert "node_sync_required" in codes(result.warnings)


def test_add_with_node_installed(resolver):
    result = resolver.validate_addition("kasia-indexer", ["kaspa-node"], node_healthy=True)

    assert result.can_add
    assert result.errors == []
    assert result.warnings == []
    assert result.new_services == ["kasia-indexer"]
    assert result.startup_order == ["kaspa-node", "kasia-indexer"]
    assert result.to_dict()["integration"]["startupOrder"] == ["kaspa-node", "kasia-indexer"]


def test_add_unsynced_node_only_warns(resolver):
    result = resolver.validate_addition("kaspa-stratum", ["kaspa-node"], node_healthy=False)

    assert result.can_add
    assert codes(result.warnings) == ["node_sync_required"]


def test_add_missing_hard_dependency(resolver):
    result = resolver.validate_addition("k-social-app", ["kaspa-node"])

    assert not result.can_add
    assert codes(result.errors) == ["missing_dependency"]
    assert result.errors[0].details["dependency"] == "k-indexer-bundle"


def test_add_conflicting_node(resolver):
    result = resolver.validate_addition("kaspa-archive-node", ["kaspa-node"])

    assert not result.can_add
    assert codes(result.errors) == ["profile_conflict"]
    assert result.errors[0].details["conflictsWith"] == "kaspa-node"


def test_add_port_conflict_between_unrelated_profiles():
    catalog = make_catalog(app("a", ports=[8080]), app("b", ports=[8080, 9090]))
    result = DependencyResolver(catalog).validate_addition("b", ["a"])

    assert not result.can_add
    assert codes(result.errors) == ["port_conflict"]
    assert result.errors[0].details == {"port": 8080, "profiles": ["a", "b"]}


def test_add_already_installed_and_unknown(resolver):
    assert codes(resolver.validate_addition("kaspa-node", ["kaspa-node"]).errors) == ["already_installed"]
    assert codes(resolver.validate_addition("nope", []).errors) == ["profile_not_found"]


def test_add_accepts_legacy_ids_in_current_selection(resolver):
    result = resolver.validate_addition("kasia-indexer", ["core"], node_healthy=True)

    assert result.can_add


def test_resource_warnings_against_host(resolver):
    host = HostResources(memory=6, cpu=2, disk=1000)
    result = resolver.validate_addition("kasia-indexer", ["kaspa-node"], node_healthy=True, host=host)

    assert result.can_add
    insufficient = [w for w in result.warnings if w.code == "insufficient_resources"]
    assert [w.details["resource"] for w in insufficient] == ["memory"]
    assert insufficient[0].details["required"] == 8


def test_high_memory_profile_warns_without_host():
    catalog = make_catalog(app("big", resources={"min_memory": 64}))
    result = DependencyResolver(catalog).validate_addition("big", [])

    assert result.can_add
    assert codes(result.warnings) == ["high_memory"]


# ===== Removal =====

def test_remove_dependency_while_dependent_installed(resolver):
    result = resolver.validate_removal("k-indexer-bundle", ["kaspa-node", "k-indexer-bundle", "k-social-app"])

    assert not result.can_remove
    assert codes(result.errors) == ["has_dependents"]
    assert result.impact.dependent_profiles == ["k-social-app"]


def test_remove_last_prerequisite(resolver):
    result = resolver.validate_removal("kaspa-node", ["kaspa-node", "kasia-indexer"])

    assert not result.can_remove
    assert codes(result.errors) == ["prerequisite_lost"]
    assert result.impact.prerequisite_issues == ["kasia-indexer"]
    assert "node_removal" in codes(result.warnings)


def test_remove_leaf_profile(resolver):
    result = resolver.validate_removal("k-social-app", ["kaspa-node", "k-indexer-bundle", "k-social-app"])

    assert result.can_remove
    assert result.impact.removed_services == ["k-social"]
    assert result.to_dict()["canRemove"] is True


def test_remove_profile_with_shared_service_only_warns():
    db = {"name": "shared-db"}
    catalog = make_catalog(
        app("a", services=[db, {"name": "a-web"}]),
        app("b", services=[db]),
    )
    result = DependencyResolver(catalog).validate_removal("a", ["a", "b"])

    assert result.can_remove
    assert result.impact.shared_services == ["shared-db"]
    assert result.impact.removed_services == ["a-web"]
    assert codes(result.warnings) == ["shared_services"]


def test_remove_not_installed(resolver):
    assert codes(resolver.validate_removal("management", ["kaspa-node"]).errors) == ["not_installed"]


# ===== Service graph =====

def test_dependents_closure_of_node(resolver, installed_state):
    affected = resolver.dependents_closure("kaspa-node", installed_state.profiles.selected)

    assert affected == ["kasia-app", "k-social", "kasia-indexer", "k-indexer"]


def test_dependents_closure_follows_provides(resolver):
    affected = resolver.dependents_closure("kaspa-archive-node", ["kaspa-archive-node", "kasia-indexer", "kasia-app"])

    assert affected == ["kasia-app", "kasia-indexer"]


def test_dependents_closure_of_indexer(resolver, installed_state):
    assert resolver.dependents_closure("k-indexer", installed_state.profiles.selected) == ["k-social"]


def test_port_conflicts_between_nodes(resolver):
    problems = resolver.detect_port_conflicts(["kaspa-node", "kaspa-archive-node"])

    assert sorted(p.details["port"] for p in problems) == [16110, 16111]


def test_export_graph_edge_types(resolver):
    graph = resolver.export_graph(["kaspa-node", "kaspa-archive-node", "kasia-indexer"])

    assert [n["id"] for n in graph["nodes"]] == ["kaspa-node", "kaspa-archive-node", "kasia-indexer"]
    assert graph["metadata"]["conflictEdges"] == 2
    assert graph["metadata"]["prerequisiteEdges"] == 2
    assert graph["metadata"]["dependencyEdges"] == 0
