# src/pipeline/stage_graph.py — v2
"""Stage graph — static dependency table of the generation pipeline.

Wraps a networkx DiGraph (edge dependency → dependent). The graph is
validated once at construction: unknown dependencies and cycles raise
StageGraphError. Instances are read-only after construction; profile
subgraphs are derived once per instance and reused across runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Mapping

import networkx as nx

from geocopy.core.models import PipelineProfile, StageId, StageStatus

logger = logging.getLogger(__name__)


class StageGraphError(Exception):
    """Raised when graph construction fails (cycle, missing dependency)."""


@dataclass(frozen=True)
class StageSpec:
    """Static definition of one pipeline stage."""

    stage: StageId
    requires_grounding: bool = False
    depends_on: tuple[StageId, ...] = ()
    can_parallelize: bool = False


PIPELINE_STAGES: tuple[StageSpec, ...] = (
    StageSpec("description", requires_grounding=True),
    StageSpec("usp_extraction", requires_grounding=True, depends_on=("description",)),
    StageSpec("chapters", depends_on=("usp_extraction",), can_parallelize=True),
    StageSpec(
        "faq", requires_grounding=True, depends_on=("usp_extraction",), can_parallelize=True
    ),
    StageSpec("step_by_step", depends_on=("faq",), can_parallelize=True),
    StageSpec(
        "case_studies",
        requires_grounding=True,
        depends_on=("usp_extraction",),
        can_parallelize=True,
    ),
    StageSpec("keywords", depends_on=("description",)),
    StageSpec("grounding_aggregation", depends_on=("faq", "case_studies")),
)

# Stages each profile leaves out.
PROFILE_EXCLUSIONS: dict[str, frozenset[str]] = {
    "full": frozenset(),
    "quick": frozenset({"step_by_step"}),
    "grounded": frozenset(),
}


@dataclass
class ExecutionPlan:
    """Informational view of the graph as topological levels.

    Stages within one level have no mutual dependencies.
    """

    levels: list[list[str]] = field(default_factory=list)

    @property
    def flat_order(self) -> list[str]:
        return [stage for level in self.levels for stage in level]

    @property
    def total_stages(self) -> int:
        return len(self.flat_order)


class StageGraph:
    """Validated dependency graph over a set of StageSpecs."""

    def __init__(self, specs: Iterable[StageSpec] = PIPELINE_STAGES) -> None:
        self._specs: dict[str, StageSpec] = {}
        for spec in specs:
            if spec.stage in self._specs:
                raise StageGraphError(f"Stage '{spec.stage}' is declared twice")
            self._specs[spec.stage] = spec

        graph = nx.DiGraph()
        graph.add_nodes_from(self._specs)
        for spec in self._specs.values():
            for dep in spec.depends_on:
                if dep not in self._specs:
                    raise StageGraphError(
                        f"Stage '{spec.stage}' depends on '{dep}' which is not registered"
                    )
                graph.add_edge(dep, spec.stage)

        if not nx.is_directed_acyclic_graph(graph):
            cycle = nx.find_cycle(graph)
            raise StageGraphError(
                f"Cycle detected involving stages: {[u for u, _ in cycle]}"
            )

        self._graph = nx.freeze(graph)
        self._order = list(self._specs)
        self._profiles: dict[str, StageGraph] = {}

    @classmethod
    def default(cls) -> StageGraph:
        """Process-wide graph over PIPELINE_STAGES."""
        return _default_graph()

    # --- Introspection ---

    @property
    def stages(self) -> list[str]:
        """Stage ids in table order."""
        return list(self._order)

    def spec(self, stage: str) -> StageSpec:
        try:
            return self._specs[stage]
        except KeyError:
            raise StageGraphError(f"Unknown stage '{stage}'") from None

    def dependencies(self, stage: str) -> list[str]:
        return [d for d in self.spec(stage).depends_on if d in self._specs]

    def dependents(self, stage: str) -> set[str]:
        """All transitive dependents of stage."""
        self.spec(stage)
        return set(nx.descendants(self._graph, stage))

    def __contains__(self, stage: object) -> bool:
        return stage in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    # --- Derivation ---

    def stages_for_profile(self, profile: PipelineProfile) -> list[str]:
        excluded = PROFILE_EXCLUSIONS.get(profile)
        if excluded is None:
            raise StageGraphError(f"Unknown pipeline profile '{profile}'")
        return [s for s in self._order if s not in excluded]

    def subgraph(self, stages: Iterable[str]) -> StageGraph:
        """Graph restricted to stages; dependencies on excluded stages are dropped."""
        keep = set(stages)
        unknown = keep - set(self._specs)
        if unknown:
            raise StageGraphError(f"Unknown stages: {sorted(unknown)}")
        specs = []
        for stage in self._order:
            if stage not in keep:
                continue
            spec = self._specs[stage]
            specs.append(
                StageSpec(
                    stage=spec.stage,
                    requires_grounding=spec.requires_grounding,
                    depends_on=tuple(d for d in spec.depends_on if d in keep),
                    can_parallelize=spec.can_parallelize,
                )
            )
        return StageGraph(specs)

    def for_profile(self, profile: PipelineProfile) -> StageGraph:
        """Profile subgraph, built on first use and shared afterwards."""
        graph = self._profiles.get(profile)
        if graph is None:
            graph = self.subgraph(self.stages_for_profile(profile))
            self._profiles[profile] = graph
        return graph

    # --- Scheduling ---

    def eligible(self, statuses: Mapping[str, StageStatus]) -> list[str]:
        """Pending stages whose dependencies have all completed, in table order."""
        ready = []
        for stage in self._order:
            if statuses.get(stage, "pending") != "pending":
                continue
            if all(statuses.get(dep) == "completed" for dep in self._specs[stage].depends_on):
                ready.append(stage)
        return ready

    def levels(self) -> ExecutionPlan:
        position = {s: i for i, s in enumerate(self._order)}
        levels = [
            sorted(generation, key=position.__getitem__)
            for generation in nx.topological_generations(self._graph)
        ]
        return ExecutionPlan(levels=levels)


@lru_cache(maxsize=1)
def _default_graph() -> StageGraph:
    graph = StageGraph(PIPELINE_STAGES)
    logger.debug("Stage graph built: %s", graph.levels().levels)
    return graph
