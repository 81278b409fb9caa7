"""Prerequisite graph and skill unlock resolution.

The graph is an explicit snapshot of ``skill_prerequisites`` edges, so the
resolver is a pure function and never touches the session.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from skillforge.db.models import SkillStatus

DONE_STATUSES = frozenset({SkillStatus.COMPLETED.value, SkillStatus.MASTERED.value})


@dataclass(frozen=True)
class PrerequisiteGraph:
    """skill id -> prerequisite ids, plus the reverse dependents index."""

    prerequisites: Mapping[str, frozenset[str]] = field(default_factory=dict)
    dependents: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[str, str]]) -> PrerequisiteGraph:
        """Build from (skill_id, prerequisite_id) pairs."""
        prereqs: dict[str, set[str]] = defaultdict(set)
        deps: dict[str, set[str]] = defaultdict(set)
        for skill_id, prerequisite_id in edges:
            prereqs[skill_id].add(prerequisite_id)
            deps[prerequisite_id].add(skill_id)
        return cls(
            prerequisites={k: frozenset(v) for k, v in prereqs.items()},
            dependents={k: frozenset(v) for k, v in deps.items()},
        )

    def prerequisites_of(self, skill_id: str) -> frozenset[str]:
        return self.prerequisites.get(skill_id, frozenset())

    def dependents_of(self, skill_id: str) -> frozenset[str]:
        return self.dependents.get(skill_id, frozenset())


def prerequisites_met(skill_id: str, graph: PrerequisiteGraph, statuses: Mapping[str, str]) -> bool:
    """True if every prerequisite of skill_id is COMPLETED or MASTERED.

    A prerequisite missing from ``statuses`` counts as not done.
    """
    return all(statuses.get(p) in DONE_STATUSES for p in graph.prerequisites_of(skill_id))


def initial_status(skill_id: str, graph: PrerequisiteGraph) -> SkillStatus:
    """Status for a freshly created skill: prerequisite-free skills start unlocked."""
    if graph.prerequisites_of(skill_id):
        return SkillStatus.LOCKED
    return SkillStatus.AVAILABLE


def resolve_unlocks(
    completed_skill_id: str,
    graph: PrerequisiteGraph,
    statuses: Mapping[str, str],
) -> list[str]:
    """Dependents of completed_skill_id that become AVAILABLE.

    Only LOCKED dependents are considered, and all of their prerequisites
    (not only the triggering one) must be done. Running it again after the
    unlock is applied returns nothing.
    """
    unlocked = []
    for dependent_id in sorted(graph.dependents_of(completed_skill_id)):
        if statuses.get(dependent_id) != SkillStatus.LOCKED.value:
            continue
        if prerequisites_met(dependent_id, graph, statuses):
            unlocked.append(dependent_id)
    return unlocked
