"""Stage graph resolution.

This module turns stage declarations into a BuildPlan:
- Name/alias validation (duplicates, unknown references)
- Cycle detection via strongly connected components (Tarjan)
- Topological batching via Kahn's algorithm, one batch per removal round
- Environment and workdir inheritance along base-stage chains

Batches are ordered by declaration order so scheduling and logs are
deterministic.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace

from stagebuild.errors import CycleError, DuplicateStageNameError, UnknownStageError
from stagebuild.types import StageSpec

logger = logging.getLogger(__name__)


@dataclass
class BuildPlan:
    """Topologically ordered batches of stage names.

    Attributes:
        batches: Batches of mutually independent stages; every stage appears
            after all stages it references.
        stages: Stage specs by canonical name (only planned stages).
        dependencies: Referenced stages by canonical name.
        target: Canonical name of the final stage, if one was requested.
    """

    batches: list[list[str]]
    stages: dict[str, StageSpec] = field(default_factory=dict)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    target: str | None = None

    @property
    def order(self) -> list[str]:
        """All planned stages flattened in execution order."""
        return [name for batch in self.batches for name in batch]

    def __len__(self) -> int:
        return sum(len(batch) for batch in self.batches)

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "target": self.target,
            "batches": [list(b) for b in self.batches],
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
        }


def build_name_index(stages: Sequence[StageSpec]) -> dict[str, str]:
    """Map every stage name and alias to its canonical stage name.

    Args:
        stages: Stage specs.

    Returns:
        Dictionary of handle -> canonical name.

    Raises:
        DuplicateStageNameError: If a name or alias is used twice.
    """
    index: dict[str, str] = {}
    for stage in stages:
        for handle in dict.fromkeys(stage.handles):
            if handle in index:
                raise DuplicateStageNameError(handle)
            index[handle] = stage.name
    return index


def stage_references(stage: StageSpec) -> list[str]:
    """Return the stage handles a stage references, in first-use order.

    Includes the base stage (if any) and every copy source stage.
    """
    refs: list[str] = []
    if stage.base.stage is not None:
        refs.append(stage.base.stage)
    for step in stage.steps:
        for copy in step.copies:
            if copy.from_stage is not None:
                refs.append(copy.from_stage)
    return list(dict.fromkeys(refs))


def build_dependency_graph(
    stages: Sequence[StageSpec],
) -> tuple[dict[str, str], dict[str, list[str]]]:
    """Build the adjacency list of stage dependencies.

    Args:
        stages: Stage specs in declaration order.

    Returns:
        Tuple of (name index, dependencies by canonical name).

    Raises:
        DuplicateStageNameError: If a name or alias is used twice.
        UnknownStageError: If a stage references an undeclared stage.
    """
    index = build_name_index(stages)
    deps: dict[str, list[str]] = {}
    for stage in stages:
        resolved: list[str] = []
        for ref in stage_references(stage):
            if ref not in index:
                raise UnknownStageError(ref, referenced_by=stage.name)
            resolved.append(index[ref])
        deps[stage.name] = list(dict.fromkeys(resolved))
    return index, deps


def strongly_connected_components(
    nodes: Sequence[str],
    edges: dict[str, list[str]],
) -> list[list[str]]:
    """Compute strongly connected components with Tarjan's algorithm.

    Args:
        nodes: Nodes in a stable order.
        edges: Adjacency list.

    Returns:
        List of components; members keep the order of ``nodes``.
    """
    position = {n: i for i, n in enumerate(nodes)}
    indices: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    def visit(node: str) -> None:
        nonlocal counter
        indices[node] = lowlink[node] = counter
        counter += 1
        stack.append(node)
        on_stack.add(node)

        for succ in edges.get(node, []):
            if succ not in indices:
                visit(succ)
                lowlink[node] = min(lowlink[node], lowlink[succ])
            elif succ in on_stack:
                lowlink[node] = min(lowlink[node], indices[succ])

        if lowlink[node] == indices[node]:
            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            components.append(sorted(component, key=position.__getitem__))

    for node in nodes:
        if node not in indices:
            visit(node)

    return components


def find_cycle(nodes: Sequence[str], edges: dict[str, list[str]]) -> list[str] | None:
    """Return the first cycle (in declaration order), or None if acyclic.

    A cycle is a strongly connected component of more than one node, or a
    single node with an edge to itself.
    """
    position = {n: i for i, n in enumerate(nodes)}
    cycles = [
        comp
        for comp in strongly_connected_components(nodes, edges)
        if len(comp) > 1 or comp[0] in edges.get(comp[0], [])
    ]
    if not cycles:
        return None
    return min(cycles, key=lambda comp: position[comp[0]])


def _closure(roots: Iterable[str], deps: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    pending = list(roots)
    while pending:
        node = pending.pop()
        if node in seen:
            continue
        seen.add(node)
        pending.extend(deps.get(node, []))
    return seen


def topo_batches(
    nodes: Sequence[str],
    deps: dict[str, list[str]],
) -> list[list[str]]:
    """Group nodes into batches with Kahn's algorithm.

    Each round removes every node whose dependencies have all been removed;
    the removed nodes form one batch, kept in ``nodes`` order.

    Args:
        nodes: Nodes in declaration order (acyclic).
        deps: Dependencies by node.

    Returns:
        List of batches.
    """
    included = set(nodes)
    indeg = {n: sum(1 for d in deps.get(n, []) if d in included) for n in nodes}
    dependents: dict[str, list[str]] = {n: [] for n in nodes}
    for n in nodes:
        for d in deps.get(n, []):
            if d in included:
                dependents[d].append(n)

    batches: list[list[str]] = []
    remaining = list(nodes)
    while remaining:
        batch = [n for n in remaining if indeg[n] == 0]
        if not batch:
            # Unreachable for acyclic input; guards against misuse
            raise CycleError(remaining)
        for n in batch:
            for child in dependents[n]:
                indeg[child] -= 1
        batches.append(batch)
        removed = set(batch)
        remaining = [n for n in remaining if n not in removed]
    return batches


def inherit_base_settings(
    stages: Sequence[StageSpec],
    index: dict[str, str],
) -> dict[str, StageSpec]:
    """Apply the environment and workdir inherited along base-stage chains.

    A stage based on another stage starts from its base's environment (its
    own values win) and, when it declares no workdir, runs in its base's
    workdir. The graph must already be known to be acyclic.

    Args:
        stages: Stage specs in declaration order.
        index: Name/alias index from build_name_index().

    Returns:
        Effective stage specs by canonical name.
    """
    by_name = {s.name: s for s in stages}
    effective: dict[str, StageSpec] = {}

    def resolve(name: str) -> StageSpec:
        if name in effective:
            return effective[name]
        stage = by_name[name]
        env: dict[str, str] = {}
        workdir = stage.workdir
        if stage.base.stage is not None:
            base = resolve(index[stage.base.stage])
            env.update(base.env)
            workdir = workdir or base.workdir
        env.update(stage.env)
        effective[name] = replace(
            stage, env=tuple(sorted(env.items())), workdir=workdir or "/"
        )
        return effective[name]

    for stage in stages:
        resolve(stage.name)
    return effective


def resolve_plan(
    stages: Sequence[StageSpec],
    target: str | None = None,
) -> BuildPlan:
    """Resolve stage declarations into a BuildPlan.

    The whole graph is validated; when a target is given only the target
    and its transitive dependencies are planned.

    Args:
        stages: Stage specs in declaration order.
        target: Name or alias of the final stage (None plans every stage).

    Returns:
        BuildPlan instance.

    Raises:
        DuplicateStageNameError: If a name or alias is used twice.
        UnknownStageError: If a reference (or the target) is undeclared.
        CycleError: If stage references form a cycle.
    """
    index, deps = build_dependency_graph(stages)
    order = [s.name for s in stages]

    cycle = find_cycle(order, deps)
    if cycle is not None:
        raise CycleError(cycle)

    canonical_target: str | None = None
    if target is not None:
        if target not in index:
            raise UnknownStageError(target)
        canonical_target = index[target]
        wanted = _closure([canonical_target], deps)
        order = [n for n in order if n in wanted]

    batches = topo_batches(order, deps)
    by_name = inherit_base_settings(stages, index)

    logger.debug("Resolved build plan: %s", batches)
    return BuildPlan(
        batches=batches,
        stages={n: by_name[n] for n in order},
        dependencies={n: list(deps[n]) for n in order},
        target=canonical_target,
    )


__all__ = [
    "BuildPlan",
    "build_dependency_graph",
    "build_name_index",
    "find_cycle",
    "inherit_base_settings",
    "resolve_plan",
    "stage_references",
    "strongly_connected_components",
    "topo_batches",
]
