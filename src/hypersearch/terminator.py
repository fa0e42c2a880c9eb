"""
Early termination of swarms that stopped improving or fell behind.

Scores are error scores (lower is better). Each swarm feeds one score per
generation. A swarm is immune during its first ``maturity_window - 1``
generations; after that it is flagged when it runs past ``max_generations``,
when its cumulative best has not moved for ``maturity_window`` generations,
or when its score at a generation is outside the per-generation tolerance
of the best swarm at that generation.
"""

from __future__ import annotations

import logging

from hypersearch.config import TerminatorConfig

logger = logging.getLogger(__name__)


class MilestoneOverrunError(IndexError):
    """Raised when a generation has no entry in the milestone tolerance table."""


class SwarmTerminator:
    def __init__(self, config: TerminatorConfig | None = None) -> None:
        self.config = config or TerminatorConfig()
        self._swarm_scores: dict[str, list[float]] = {}
        self._swarm_bests: dict[str, list[float]] = {}
        self.terminated_swarms: set[str] = set()

    @property
    def swarm_scores(self) -> dict[str, tuple[float, ...]]:
        return {swarm_id: tuple(scores) for swarm_id, scores in self._swarm_scores.items()}

    @property
    def swarm_bests(self) -> dict[str, tuple[float, ...]]:
        return {swarm_id: tuple(bests) for swarm_id, bests in self._swarm_bests.items()}

    def num_data_points(self, swarm_id: str) -> int:
        return len(self._swarm_scores.get(swarm_id, ()))

    def record_data_point(self, swarm_id: str, generation: int, err_score: float) -> set[str]:
        """
        Record ``err_score`` for ``swarm_id`` at ``generation``.

        Generations must be fed in order, starting at 0.
        A generation past the milestone table raises :class:`MilestoneOverrunError`
        before anything is recorded, so the same generation can be fed again.

        Returns:
            Swarms newly flagged for termination by this data point.
        """
        window = self.config.maturity_window
        terminated: set[str] = set()

        scores = self._swarm_scores.setdefault(swarm_id, [])
        bests = self._swarm_bests.setdefault(swarm_id, [])
        assert generation == len(scores), (
            f"Swarm {swarm_id}: expected generation {len(scores)}, got {generation}"
        )
        milestones = self.config.milestones
        if self.config.termination_enabled and generation + 1 >= window and generation >= len(milestones):
            raise MilestoneOverrunError(
                f"No milestone tolerance for generation {generation} ({len(milestones)} configured)"
            )
        scores.append(err_score)
        bests.append(err_score if not bests else min(bests[-1], err_score))

        # Too young to judge
        if generation + 1 < window:
            return terminated

        max_generations = self.config.max_generations
        if max_generations is not None and generation > max_generations:
            logger.info("Swarm %s: reached max generations (%d)", swarm_id, max_generations)
            terminated.add(swarm_id)

        if self.config.termination_enabled:
            terminated |= self._get_terminated_swarms(generation)

        # Plateau: best score unchanged over the last maturity_window generations
        if len(bests) > window and bests[-1] == bests[-1 - window]:
            logger.info("Swarm %s: matured, best %s unchanged for %d generations", swarm_id, bests[-1], window)
            terminated.add(swarm_id)

        newly_terminated = terminated - self.terminated_swarms
        self.terminated_swarms |= newly_terminated
        if newly_terminated:
            logger.info("Generation %d: terminating swarms %s", generation, sorted(newly_terminated))
        return newly_terminated

    def _get_terminated_swarms(self, generation: int) -> set[str]:
        generation_scores = {
            swarm_id: scores[generation]
            for swarm_id, scores in self._swarm_scores.items()
            if len(scores) > generation and swarm_id not in self.terminated_swarms
        }
        if not generation_scores:
            return set()

        tolerance = self.config.milestones[generation]

        best_score = min(generation_scores.values())
        limit = best_score * (1 + tolerance)
        terminated = {swarm_id for swarm_id, score in generation_scores.items() if score > limit}
        for swarm_id in sorted(terminated):
            logger.info(
                "Swarm %s: score %s at generation %d is outside tolerance %s of best %s",
                swarm_id, generation_scores[swarm_id], generation, tolerance, best_score,
            )
        return terminated
