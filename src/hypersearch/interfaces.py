"""
Collaborator contracts consumed by the hypersearch core.

The surrounding system supplies a record store (shared, CAS-capable), a
results index (per-model scores) and a work canceller. Reference
implementations live in :mod:`hypersearch.records` and
:mod:`hypersearch.results`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ParticleState:
    """Identity of one particle position; ``gen_idx`` counts its moves."""

    particle_id: str
    gen_idx: int
    swarm_id: str


@dataclass
class ParticleInfo:
    particle_state: ParticleState
    model_id: int
    err_score: float
    completed: bool
    matured: bool

    @property
    def swarm_id(self) -> str:
        return self.particle_state.swarm_id


@dataclass
class ParticleInfos:
    """Parallel lists describing a filtered set of particles."""

    particle_states: list[ParticleState] = field(default_factory=list)
    model_ids: list[int] = field(default_factory=list)
    err_scores: list[float] = field(default_factory=list)
    completed_flags: list[bool] = field(default_factory=list)
    matured_flags: list[bool] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.particle_states)

    def append(self, info: ParticleInfo) -> None:
        self.particle_states.append(info.particle_state)
        self.model_ids.append(info.model_id)
        self.err_scores.append(info.err_score)
        self.completed_flags.append(info.completed)
        self.matured_flags.append(info.matured)


@runtime_checkable
class RecordStore(Protocol):
    """Job record store with a single-field compare-and-swap primitive."""

    def get_field(self, job_id: str, field_name: str) -> str | None:
        """Return the field's current text, or None when it was never set."""
        ...

    def set_field_if_equal(
        self,
        job_id: str,
        field_name: str,
        new_value: str,
        expected: str | None,
    ) -> bool:
        """
        Set ``field_name`` to ``new_value`` only if it still holds ``expected``.

        ``expected=None`` means "only if the field has never been set".

        Returns:
            True if the write happened, False if another writer got there first.
        """
        ...


@runtime_checkable
class ResultsIndex(Protocol):
    """Read side of the per-model results table."""

    def best_model_id_and_err_score(
        self, swarm_id: str | None = None, gen_idx: int | None = None
    ) -> tuple[int | None, float | None]:
        ...

    def get_particle_infos(
        self,
        swarm_id: str | None = None,
        gen_idx: int | None = None,
        completed: bool | None = None,
        matured: bool | None = None,
    ) -> ParticleInfos:
        ...

    def get_particle_info(self, model_id: int) -> ParticleInfo:
        ...


@runtime_checkable
class WorkCanceller(Protocol):
    def kill_swarm_particles(self, swarm_id: str) -> None:
        """Best-effort request to stop in-flight evaluations of ``swarm_id``."""
        ...

    def cancel_models(self, model_ids: list[int]) -> None:
        """Best-effort request to stop the given running models."""
        ...
