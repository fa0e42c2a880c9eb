"""
In-memory index of model results, grouped by swarm and particle generation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from hypersearch.interfaces import ParticleInfo, ParticleInfos, ParticleState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaturedSwarmGeneration:
    swarm_id: str
    gen_idx: int
    best_score: float


@dataclass
class _ModelEntry:
    model_id: int
    particle_state: ParticleState
    err_score: float
    completed: bool
    matured: bool


class ResultsDB:
    """
    Results of every model seen by this worker.

    Scores are canonicalised to error scores: lower is better. Anything that
    has not matured scores ``+inf`` so that it never wins a comparison.
    """

    def __init__(self, maximize: bool = False) -> None:
        self.maximize = maximize
        self._entries: list[_ModelEntry] = []
        self._model_id_to_idx: dict[int, int] = {}
        self._swarm_id_to_indexes: dict[str, list[int]] = {}
        self._completed_models: set[int] = set()

        self._best_result = math.inf
        self._best_model_id: int | None = None

        # Best (model_id, err_score) per generation of each swarm
        self._swarm_best_per_generation: dict[str, list[tuple[int | None, float]]] = {}

        # Support for get_matured_swarm_generations()
        self._modified_swarm_gens: set[tuple[str, int]] = set()
        self._matured_swarm_gens: set[tuple[str, int]] = set()

    def update(
        self,
        model_id: int,
        particle_state: ParticleState,
        metric_result: float | None,
        completed: bool,
        matured: bool,
    ) -> float:
        """
        Add or replace the result of one model.

        Returns:
            The effective error score recorded for the model.
        """
        # Anything that has completed has matured
        if completed:
            matured = True

        if metric_result is not None and matured:
            err_score = -metric_result if self.maximize else metric_result
            if err_score < self._best_result:
                self._best_result = err_score
                self._best_model_id = model_id
                logger.info(
                    "New best model after %d evaluations: errScore %s on model %s",
                    len(self._entries), err_score, model_id,
                )
        else:
            err_score = math.inf

        if completed:
            self._completed_models.add(model_id)

        entry_idx = self._model_id_to_idx.get(model_id)
        if entry_idx is None:
            self._entries.append(_ModelEntry(model_id, particle_state, err_score, completed, matured))
            entry_idx = len(self._entries) - 1
            self._model_id_to_idx[model_id] = entry_idx
            self._swarm_id_to_indexes.setdefault(particle_state.swarm_id, []).append(entry_idx)
        else:
            entry = self._entries[entry_idx]
            # The particle is fixed when the model is first reported
            particle_state = entry.particle_state
            entry.err_score = err_score
            entry.completed = completed
            entry.matured = matured

        swarm_id, gen_idx = particle_state.swarm_id, particle_state.gen_idx
        best_scores = self._swarm_best_per_generation.setdefault(swarm_id, [])
        while gen_idx >= len(best_scores):
            best_scores.append((None, math.inf))
        if err_score < best_scores[gen_idx][1]:
            best_scores[gen_idx] = (model_id, err_score)

        key = (swarm_id, gen_idx)
        if key not in self._matured_swarm_gens:
            self._modified_swarm_gens.add(key)

        return err_score

    def num_models(self, swarm_id: str | None = None) -> int:
        if swarm_id is None:
            return len(self._entries)
        return len(self._swarm_id_to_indexes.get(swarm_id, ()))

    def get_num_completed_models(self) -> int:
        return len(self._completed_models)

    def best_model_id_and_err_score(
        self, swarm_id: str | None = None, gen_idx: int | None = None
    ) -> tuple[int | None, float]:
        """
        Best model overall, or within ``swarm_id`` up to and including ``gen_idx``.

        Returns ``(None, inf)`` when nothing has scored yet.
        """
        if swarm_id is None:
            return self._best_model_id, self._best_result

        best_model_id: int | None = None
        best_score = math.inf
        for idx, (model_id, err_score) in enumerate(self._swarm_best_per_generation.get(swarm_id, ())):
            if gen_idx is not None and idx > gen_idx:
                break
            if err_score < best_score:
                best_model_id, best_score = model_id, err_score
        return best_model_id, best_score

    def get_particle_info(self, model_id: int) -> ParticleInfo:
        entry = self._entries[self._model_id_to_idx[model_id]]
        return ParticleInfo(entry.particle_state, entry.model_id, entry.err_score, entry.completed, entry.matured)

    def get_particle_infos(
        self,
        swarm_id: str | None = None,
        gen_idx: int | None = None,
        completed: bool | None = None,
        matured: bool | None = None,
    ) -> ParticleInfos:
        """Particles matching every filter that is not None."""
        if swarm_id is None:
            indexes: list[int] = list(range(len(self._entries)))
        else:
            indexes = self._swarm_id_to_indexes.get(swarm_id, [])

        infos = ParticleInfos()
        for idx in indexes:
            entry = self._entries[idx]
            if gen_idx is not None and entry.particle_state.gen_idx != gen_idx:
                continue
            if completed is not None and entry.completed != completed:
                continue
            if matured is not None and entry.matured != matured:
                continue
            infos.append(ParticleInfo(entry.particle_state, entry.model_id, entry.err_score,
                                      entry.completed, entry.matured))
        return infos

    def get_matured_swarm_generations(self, min_particles: int) -> list[MaturedSwarmGeneration]:
        """
        Swarm generations that matured since the last call.

        A generation matures once all of its particles have matured, at least
        ``min_particles`` of them, and the previous generation of the same
        swarm has matured. Each generation is reported once.
        """
        result: list[MaturedSwarmGeneration] = []

        # Lowest generation first so a generation can unlock the next one in the same call
        for key in sorted(self._modified_swarm_gens):
            swarm_id, gen_idx = key
            if key in self._matured_swarm_gens:
                # A model of this generation reported after it had matured
                self._modified_swarm_gens.discard(key)
                continue
            if gen_idx >= 1 and (swarm_id, gen_idx - 1) not in self._matured_swarm_gens:
                continue

            infos = self.get_particle_infos(swarm_id, gen_idx)
            num_matured = sum(infos.matured_flags)
            if num_matured >= min_particles and num_matured == len(infos):
                self._matured_swarm_gens.add(key)
                self._modified_swarm_gens.discard(key)
                result.append(MaturedSwarmGeneration(swarm_id, gen_idx, min(infos.err_scores)))

        return result
