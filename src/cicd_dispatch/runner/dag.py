"""
Job dependency graph.

Jobs are held in an arena keyed by job id with an explicit adjacency list of
dependencies, so cycle detection and topological execution are testable
without any workflow interpreter.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..domain.models import Job
from ..errors import ValidationError


def find_cycle(adjacency: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a list of node ids, or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[str, int] = {node: WHITE for node in adjacency}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in sorted(adjacency.get(node, ())):
            state = color.get(dep, BLACK)
            if state == GREY:
                return stack[stack.index(dep) :] + [dep]
            if state == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(adjacency):
        if color[node] == WHITE:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def topological_order(adjacency: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Group nodes into waves; every node comes after all its dependencies.

    Dependencies that are not nodes of the graph are ignored.
    """
    remaining = {node: set(deps) & set(adjacency) for node, deps in adjacency.items()}
    completed: Set[str] = set()
    waves: List[List[str]] = []

    while remaining:
        ready = sorted(node for node, deps in remaining.items() if deps <= completed)
        if not ready:
            cycle = find_cycle(remaining) or sorted(remaining)
            raise ValidationError(
                "Dependency cycle detected", [" -> ".join(cycle)]
            )
        waves.append(ready)
        completed.update(ready)
        for node in ready:
            del remaining[node]

    return waves


class JobGraph:
    """Arena of jobs plus their dependency adjacency list."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self.nodes: Dict[str, Job] = {}
        self.dependencies: Dict[str, Set[str]] = {}
        self._dependents: Dict[str, Set[str]] = {}
        for job in jobs:
            self.add(job)

    def add(self, job: Job) -> None:
        if job.id in self.nodes:
            raise ValidationError(f"Duplicate job id '{job.id}'")
        self.nodes[job.id] = job
        self.dependencies[job.id] = set(job.dependencies)
        self._dependents.setdefault(job.id, set())
        for dep in job.dependencies:
            self._dependents.setdefault(dep, set()).add(job.id)

    def validate(self) -> None:
        """Raise ValidationError on unknown dependencies or cycles."""
        problems = [
            f"job '{job_id}' depends on unknown job '{dep}'"
            for job_id, deps in sorted(self.dependencies.items())
            for dep in sorted(deps)
            if dep not in self.nodes
        ]
        if problems:
            raise ValidationError("Invalid job graph", problems)
        cycle = find_cycle(self.dependencies)
        if cycle:
            raise ValidationError("Dependency cycle detected", [" -> ".join(cycle)])

    def dependents(self, job_id: str) -> Set[str]:
        return set(self._dependents.get(job_id, ()))

    def transitive_dependents(self, job_id: str) -> Set[str]:
        seen: Set[str] = set()
        frontier = [job_id]
        while frontier:
            current = frontier.pop()
            for dependent in self._dependents.get(current, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return seen

    def topological_order(self) -> List[List[str]]:
        return topological_order(self.dependencies)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes.values())
