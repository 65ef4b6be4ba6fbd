"""
Profile dependency resolution.

The resolver answers three questions for the installer: which profiles a
selection pulls in, in what order they can start, and whether a profile can be
added to or removed from the current installation. Every call rebuilds its
graph from the catalog plus the selection it is given; nothing is cached
between calls.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from stack_orchestration.core.errors import ErrorKind, Invalid, Ok, Problem
from .loader import ProfileCatalog
from .models import Profile, ProfileCategory, ServiceDescriptor

logger = logging.getLogger(__name__)

# Profiles needing more than this are flagged even without a known host budget.
LARGE_MEMORY_GB = 32


class EdgeType(str, Enum):
    DEPENDENCY = "dependency"
    PREREQUISITE = "prerequisite"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class HostResources:
    """Resources available on the host, in GB and cores."""
    memory: float
    cpu: int
    disk: float


@dataclass
class DependencyGraph:
    """Profiles under consideration and their "depends on" edges."""
    nodes: List[str]
    edges: Dict[str, List[str]]
    requested: List[str] = field(default_factory=list)

    def dependencies_of(self, node: str) -> List[str]:
        return self.edges.get(node, [])


@dataclass
class AdditionResult:
    profile: str
    can_add: bool
    errors: List[Problem] = field(default_factory=list)
    warnings: List[Problem] = field(default_factory=list)
    new_services: List[str] = field(default_factory=list)
    startup_order: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "canAdd": self.can_add,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "integration": {
                "newServices": list(self.new_services),
                "startupOrder": list(self.startup_order),
            },
        }


@dataclass
class RemovalImpact:
    dependent_profiles: List[str] = field(default_factory=list)
    shared_services: List[str] = field(default_factory=list)
    prerequisite_issues: List[str] = field(default_factory=list)
    removed_services: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependentProfiles": list(self.dependent_profiles),
            "sharedServices": list(self.shared_services),
            "prerequisiteIssues": list(self.prerequisite_issues),
            "removedServices": list(self.removed_services),
        }


@dataclass
class RemovalResult:
    profile: str
    can_remove: bool
    errors: List[Problem] = field(default_factory=list)
    warnings: List[Problem] = field(default_factory=list)
    impact: RemovalImpact = field(default_factory=RemovalImpact)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "canRemove": self.can_remove,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "impact": self.impact.to_dict(),
        }


class DependencyResolver:
    """Graph algorithms over the profile catalog."""

    def __init__(self, catalog: ProfileCatalog):
        self.catalog = catalog
        self.logger = logging.getLogger(__name__)

    # ===== Graph construction =====

    def build_graph(self, selected_profile_ids: Iterable[str]) -> Ok[DependencyGraph] | Invalid:
        """Expand a selection with its transitive hard dependencies.

        Prerequisite edges are added only towards alternatives that are part of
        the expanded selection, so the chosen alternative starts first.
        """
        requested = list(dict.fromkeys(selected_profile_ids))
        unknown = [pid for pid in requested if pid not in self.catalog]
        if unknown:
            return Invalid([
                Problem(ErrorKind.VALIDATION, "unknown_profile", f"Unknown profile: {pid}", {"profile": pid})
                for pid in unknown
            ])

        included: Set[str] = set()
        pending = deque(requested)
        while pending:
            pid = pending.popleft()
            if pid in included:
                continue
            included.add(pid)
            for dep in self.catalog.get(pid).dependencies:
                if dep not in included:
                    pending.append(dep)

        nodes = sorted(included, key=self.catalog.order_of)
        edges: Dict[str, List[str]] = {}
        for pid in nodes:
            profile = self.catalog.get(pid)
            targets = list(profile.dependencies)
            targets.extend(p for p in profile.prerequisites if p in included and p not in targets)
            edges[pid] = sorted(targets, key=self.catalog.order_of)

        return Ok(DependencyGraph(nodes=nodes, edges=edges, requested=requested))

    def detect_cycles(self, graph: DependencyGraph) -> List[List[str]]:
        """Return every elementary cycle in the graph.

        Each cycle starts and ends with the same profile id. Cycles are rooted
        at their earliest node in catalog order, so each one is reported once.
        """
        cycles: List[List[str]] = []
        position = {node: idx for idx, node in enumerate(graph.nodes)}

        for start in graph.nodes:
            start_pos = position[start]
            path: List[str] = [start]
            on_stack: Set[str] = {start}

            def visit(node: str) -> None:
                for nxt in graph.dependencies_of(node):
                    if nxt not in position or position[nxt] < start_pos:
                        continue
                    if nxt == start:
                        cycles.append(path + [start])
                    elif nxt not in on_stack:
                        path.append(nxt)
                        on_stack.add(nxt)
                        visit(nxt)
                        on_stack.discard(nxt)
                        path.pop()

            visit(start)

        return cycles

    def compute_startup_order(self, graph: DependencyGraph) -> Ok[List[Profile]] | Invalid:
        """Topologically sort the graph, dependencies first.

        Ties are broken by catalog declaration order. A cyclic graph fails with
        one problem per cycle.
        """
        cycles = self.detect_cycles(graph)
        if cycles:
            return Invalid([
                Problem(
                    ErrorKind.VALIDATION,
                    "circular_dependency",
                    "Circular dependency: " + " -> ".join(cycle),
                    {"cycle": cycle},
                )
                for cycle in cycles
            ])

        remaining = {node: len(graph.dependencies_of(node)) for node in graph.nodes}
        dependents: Dict[str, List[str]] = {node: [] for node in graph.nodes}
        for node in graph.nodes:
            for dep in graph.dependencies_of(node):
                dependents.setdefault(dep, []).append(node)

        ready = [(self.catalog.order_of(n), n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: List[Profile] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(self.catalog.get(node))
            for dependent in dependents.get(node, []):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self.catalog.order_of(dependent), dependent))

        return Ok(order)

    def startup_order_for(self, selected_profile_ids: Iterable[str]) -> Ok[List[Profile]] | Invalid:
        graph = self.build_graph(selected_profile_ids)
        if not isinstance(graph, Ok):
            return graph
        return self.compute_startup_order(graph.value)

    def service_startup_order(self, selected_profile_ids: Iterable[str]) -> Ok[List[ServiceDescriptor]] | Invalid:
        """Services of the selection in startup order, shared services once."""
        order = self.startup_order_for(selected_profile_ids)
        if not isinstance(order, Ok):
            return order
        seen: Set[str] = set()
        services: List[ServiceDescriptor] = []
        for profile in order.value:
            for service in sorted(profile.services, key=lambda s: s.startup_order):
                if service.name not in seen:
                    seen.add(service.name)
                    services.append(service)
        return Ok(services)

    # ===== Change validation =====

    def validate_addition(
        self,
        profile_id: str,
        current_profiles: Iterable[str],
        node_healthy: Optional[bool] = None,
        host: Optional[HostResources] = None,
    ) -> AdditionResult:
        """Check whether a profile can be added to the current selection."""
        current = self.catalog.migrate_ids(current_profiles)
        result = AdditionResult(profile=profile_id, can_add=False)

        profile = self.catalog.get(profile_id)
        if profile is None:
            result.errors.append(Problem(
                ErrorKind.NOT_FOUND, "profile_not_found", f"Profile {profile_id} not found", {"profile": profile_id}
            ))
            return result

        if profile_id in current:
            result.errors.append(Problem(
                ErrorKind.VALIDATION, "already_installed", f"{profile.name} is already installed", {"profile": profile_id}
            ))
            return result

        conflicting = [c for c in profile.conflicts if c in current]
        conflicting.extend(
            pid for pid in current
            if pid not in conflicting and pid in self.catalog and profile_id in self.catalog.get(pid).conflicts
        )
        for other in conflicting:
            result.errors.append(Problem(
                ErrorKind.VALIDATION,
                "profile_conflict",
                f"{profile.name} conflicts with installed profile {self.catalog.get(other).name}",
                {"profile": profile_id, "conflictsWith": other},
            ))

        for dep in self._dependency_closure(profile_id):
            if dep not in current:
                result.errors.append(Problem(
                    ErrorKind.VALIDATION,
                    "missing_dependency",
                    f"{profile.name} requires {self.catalog.get(dep).name}",
                    {"profile": profile_id, "dependency": dep},
                ))

        if profile.prerequisites and not any(p in current for p in profile.prerequisites):
            result.errors.append(Problem(
                ErrorKind.VALIDATION,
                "missing_prerequisite",
                f"{profile.name} requires one of: {', '.join(profile.prerequisites)}",
                {"profile": profile_id, "anyOf": list(profile.prerequisites)},
            ))

        for problem in self.detect_port_conflicts([*current, profile_id]):
            if profile_id in problem.details.get("profiles", []) and not conflicting:
                result.errors.append(problem)

        result.warnings.extend(self._resource_warnings(profile, current, host))

        if profile.requires_synced_node and node_healthy is not True:
            result.warnings.append(Problem(
                ErrorKind.CONNECTIVITY,
                "node_sync_required",
                f"{profile.name} needs a synced node; it can be installed now but will not work until the node is healthy",
                {"profile": profile_id},
            ))

        existing = {s.name for s in self.catalog.services(current)}
        result.new_services = [s.name for s in profile.services if s.name not in existing]

        if not result.errors:
            order = self.startup_order_for([*current, profile_id])
            if isinstance(order, Ok):
                result.startup_order = [p.id for p in order.value]
            else:
                result.errors.extend(order.problems)

        result.can_add = not result.errors
        return result

    def validate_removal(self, profile_id: str, current_profiles: Iterable[str]) -> RemovalResult:
        """Check whether a profile can be removed from the current selection.

        Losing a hard dependency or the last available prerequisite blocks the
        removal. Services shared with other selected profiles only warn.
        """
        current = self.catalog.migrate_ids(current_profiles)
        result = RemovalResult(profile=profile_id, can_remove=False)

        profile = self.catalog.get(profile_id)
        if profile is None:
            result.errors.append(Problem(
                ErrorKind.NOT_FOUND, "profile_not_found", f"Profile {profile_id} not found", {"profile": profile_id}
            ))
            return result
        if profile_id not in current:
            result.errors.append(Problem(
                ErrorKind.VALIDATION, "not_installed", f"{profile.name} is not installed", {"profile": profile_id}
            ))
            return result

        remaining = [pid for pid in current if pid != profile_id and pid in self.catalog]
        impact = result.impact

        for pid in remaining:
            if profile_id in self._dependency_closure(pid):
                impact.dependent_profiles.append(pid)
                result.errors.append(Problem(
                    ErrorKind.VALIDATION,
                    "has_dependents",
                    f"{self.catalog.get(pid).name} depends on {profile.name}",
                    {"profile": profile_id, "dependent": pid},
                ))

        for pid in remaining:
            other = self.catalog.get(pid)
            if profile_id in other.prerequisites and not any(
                p in remaining for p in other.prerequisites
            ):
                impact.prerequisite_issues.append(pid)
                result.errors.append(Problem(
                    ErrorKind.VALIDATION,
                    "prerequisite_lost",
                    f"{other.name} would have no remaining prerequisite among: {', '.join(other.prerequisites)}",
                    {"profile": profile_id, "dependent": pid},
                ))

        remaining_services = {s.name for s in self.catalog.services(remaining)}
        for service in profile.services:
            if service.name in remaining_services:
                impact.shared_services.append(service.name)
            else:
                impact.removed_services.append(service.name)
        if impact.shared_services:
            result.warnings.append(Problem(
                ErrorKind.VALIDATION,
                "shared_services",
                "Shared services stay running for other profiles: " + ", ".join(impact.shared_services),
                {"services": list(impact.shared_services)},
            ))

        if profile.category == ProfileCategory.NODE:
            result.warnings.append(Problem(
                ErrorKind.VALIDATION,
                "node_removal",
                f"Removing {profile.name} leaves remaining services without a local node",
                {"profile": profile_id},
            ))

        result.can_remove = not result.errors
        return result

    # ===== Service graph =====

    def dependents_closure(self, service_name: str, installed_profiles: Iterable[str]) -> List[str]:
        """All installed services that directly or transitively depend on a service.

        Returned in catalog order, excluding the service itself.
        """
        services = self.catalog.services(self.catalog.migrate_ids(installed_profiles))
        affected: Set[str] = set()
        pending = deque([service_name])
        while pending:
            target = pending.popleft()
            provider = self.catalog.get_service(target)
            names = {target, *(provider.provides if provider else [])}
            for service in services:
                if service.name in affected or service.name == service_name:
                    continue
                if names.intersection(service.depends_on):
                    affected.add(service.name)
                    pending.append(service.name)

        ordered: List[str] = []
        for service in services:
            if service.name in affected and service.name not in ordered:
                ordered.append(service.name)
        return ordered

    # ===== Diagnostics =====

    def detect_port_conflicts(self, profile_ids: Iterable[str]) -> List[Problem]:
        """One problem per host port bound by more than one profile."""
        owners: Dict[int, List[str]] = {}
        for pid in profile_ids:
            profile = self.catalog.get(pid)
            if profile is None:
                continue
            for port in profile.ports:
                owners.setdefault(port, [])
                if pid not in owners[port]:
                    owners[port].append(pid)
        return [
            Problem(
                ErrorKind.VALIDATION,
                "port_conflict",
                f"Port {port} is used by: {', '.join(pids)}",
                {"port": port, "profiles": pids},
            )
            for port, pids in owners.items() if len(pids) > 1
        ]

    def export_graph(self, profile_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Typed edge list for display, including prerequisites and conflicts."""
        ids = list(profile_ids) if profile_ids is not None else self.catalog.ids
        included = [pid for pid in self.catalog.ids if pid in set(ids)]
        edges = []
        for pid in included:
            profile = self.catalog.get(pid)
            for dep in profile.dependencies:
                edges.append({"from": pid, "to": dep, "type": EdgeType.DEPENDENCY.value})
            for pre in profile.prerequisites:
                edges.append({"from": pid, "to": pre, "type": EdgeType.PREREQUISITE.value})
            for con in profile.conflicts:
                if con in included:
                    edges.append({"from": pid, "to": con, "type": EdgeType.CONFLICT.value})
        return {
            "nodes": [
                {"id": pid, "name": self.catalog.get(pid).name, "category": self.catalog.get(pid).category.value}
                for pid in included
            ],
            "edges": edges,
            "metadata": {
                "totalNodes": len(included),
                "totalEdges": len(edges),
                "dependencyEdges": sum(1 for e in edges if e["type"] == EdgeType.DEPENDENCY.value),
                "prerequisiteEdges": sum(1 for e in edges if e["type"] == EdgeType.PREREQUISITE.value),
                "conflictEdges": sum(1 for e in edges if e["type"] == EdgeType.CONFLICT.value),
            },
        }

    # ===== Helpers =====

    def _dependency_closure(self, profile_id: str) -> List[str]:
        """Transitive hard dependencies of a profile, excluding itself."""
        seen: List[str] = []
        pending = deque(self.catalog.get(profile_id).dependencies if profile_id in self.catalog else [])
        while pending:
            dep = pending.popleft()
            if dep in seen or dep == profile_id:
                continue
            seen.append(dep)
            pending.extend(self.catalog.get(dep).dependencies)
        return seen

    def _resource_warnings(
        self, profile: Profile, current: List[str], host: Optional[HostResources]
    ) -> List[Problem]:
        warnings = []
        if profile.resources.min_memory > LARGE_MEMORY_GB:
            warnings.append(Problem(
                ErrorKind.VALIDATION,
                "high_memory",
                f"{profile.name} requires {profile.resources.min_memory:g}GB of memory",
                {"profile": profile.id, "memory": profile.resources.min_memory},
            ))
        if host is None:
            return warnings

        selected = [self.catalog.get(pid) for pid in current if pid in self.catalog] + [profile]
        totals = {
            "memory": (sum(p.resources.min_memory for p in selected), host.memory),
            "cpu": (max(p.resources.min_cpu for p in selected), host.cpu),
            "disk": (sum(p.resources.min_disk for p in selected), host.disk),
        }
        for resource, (needed, available) in totals.items():
            if needed > available:
                warnings.append(Problem(
                    ErrorKind.VALIDATION,
                    "insufficient_resources",
                    f"Selected profiles need {needed:g} {resource} but the host has {available:g}",
                    {"resource": resource, "required": needed, "available": available},
                ))
        return warnings
