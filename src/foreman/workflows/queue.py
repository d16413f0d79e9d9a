"""Issue ordering and dependency resolution for the develop loop."""

from __future__ import annotations

import heapq
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

DEFAULT_DIFFICULTY = 3

QueueMethod = Literal["difficulty_sort", "topological_sort"]


class IssueLike(Protocol):
    id: str
    difficulty: int
    depends_on: list[str]


@dataclass(slots=True)
class QueueRationale:
    method: QueueMethod
    cycles: list[list[str]] = field(default_factory=list)
    dep_edges: int = 0
    unknown_dependencies: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "cycles": [list(cycle) for cycle in self.cycles],
            "dep_edges": self.dep_edges,
            "unknown_dependencies": {key: list(value) for key, value in self.unknown_dependencies.items()},
        }


@dataclass(slots=True)
class Outcome:
    status: str
    branch: str | None = None


@dataclass(slots=True)
class DependencyResolution:
    base_branch: str | None = None
    all_deps_failed: bool = False
    has_pending: bool = False
    dep_outcomes: dict[str, str] = field(default_factory=dict)


def _difficulty(issue: IssueLike) -> int:
    return int(getattr(issue, "difficulty", None) or DEFAULT_DIFFICULTY)


def _find_cycles(remaining: set[str], edges: dict[str, list[str]]) -> list[list[str]]:
    """Report each dependency cycle among ``remaining`` once, as an id path."""
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()
    visited: set[str] = set()

    def _walk(node: str, path: list[str], on_path: set[str]) -> None:
        visited.add(node)
        path.append(node)
        on_path.add(node)
        for dep in edges.get(node, []):
            if dep not in remaining:
                continue
            if dep in on_path:
                cycle = path[path.index(dep) :]
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(list(cycle))
            elif dep not in visited:
                _walk(dep, path, on_path)
        path.pop()
        on_path.discard(node)

    for node in sorted(remaining):
        if node not in visited:
            _walk(node, [], set())
    return cycles


def build_issue_queue(issues: Sequence[IssueLike]) -> tuple[list[IssueLike], QueueRationale]:
    """Order issues for processing.

    Without any declared dependency the order is a stable ascending sort on
    difficulty. Otherwise a topological order is computed over the edges
    between known issue ids, breaking ties by difficulty then input order.
    Issues caught in a cycle are appended after everything else and the
    cycles are reported in the rationale.
    """
    if not any(issue.depends_on for issue in issues):
        ordered = sorted(issues, key=_difficulty)
        return list(ordered), QueueRationale(method="difficulty_sort")

    index_of = {issue.id: position for position, issue in enumerate(issues)}
    by_id = {issue.id: issue for issue in issues}
    edges: dict[str, list[str]] = {}
    dependents: dict[str, list[str]] = {issue.id: [] for issue in issues}
    in_degree: dict[str, int] = {}
    unknown: dict[str, list[str]] = {}
    dep_edges = 0

    for issue in issues:
        known = []
        for dep in dict.fromkeys(issue.depends_on):
            if dep in by_id and dep != issue.id:
                known.append(dep)
            elif dep not in by_id:
                unknown.setdefault(issue.id, []).append(dep)
        edges[issue.id] = known
        in_degree[issue.id] = len(known)
        dep_edges += len(known)
        for dep in known:
            dependents[dep].append(issue.id)

    def _rank(issue_id: str) -> tuple[int, int]:
        return _difficulty(by_id[issue_id]), index_of[issue_id]

    ready = [(_rank(issue_id), issue_id) for issue_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered_ids: list[str] = []
    while ready:
        _, issue_id = heapq.heappop(ready)
        ordered_ids.append(issue_id)
        for dependent in dependents[issue_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (_rank(dependent), dependent))

    placed = set(ordered_ids)
    remaining = {issue_id for issue_id in by_id if issue_id not in placed}
    cycles = _find_cycles(remaining, edges) if remaining else []
    ordered_ids.extend(sorted(remaining, key=_rank))

    rationale = QueueRationale(
        method="topological_sort",
        cycles=cycles,
        dep_edges=dep_edges,
        unknown_dependencies=unknown,
    )
    return [by_id[issue_id] for issue_id in ordered_ids], rationale


def resolve_dependency_branch(
    issue: IssueLike,
    outcomes: Mapping[str, Outcome],
    known_ids: set[str],
    *,
    pending_counts_as_failed: bool = False,
) -> DependencyResolution:
    """Summarize how an issue's known dependencies have turned out so far.

    Ids outside ``known_ids`` are external and never block. A known id with
    no recorded outcome is pending; with ``pending_counts_as_failed`` it is
    counted as failed instead.
    """
    resolution = DependencyResolution()
    observed = 0
    failed = 0
    for dep in issue.depends_on:
        if dep not in known_ids or dep == issue.id:
            continue
        outcome = outcomes.get(dep)
        if outcome is None:
            if pending_counts_as_failed:
                resolution.dep_outcomes[dep] = "unresolved"
                observed += 1
                failed += 1
            else:
                resolution.dep_outcomes[dep] = "pending"
                resolution.has_pending = True
            continue
        observed += 1
        resolution.dep_outcomes[dep] = outcome.status
        if outcome.status == "completed":
            if outcome.branch and resolution.base_branch is None:
                resolution.base_branch = outcome.branch
        elif outcome.status in {"failed", "skipped"}:
            failed += 1
    resolution.all_deps_failed = observed > 0 and failed == observed
    return resolution
