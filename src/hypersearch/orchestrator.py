"""
Worker-side driver tying the shared swarm state, the results index and the
swarm terminator together.

A worker loop typically looks like::

    coordinator = SwarmCoordinator(job_id, config, record_store)
    while not coordinator.should_stop():
        choice = coordinator.next_swarm()
        if choice is None:
            break
        sprint_idx, swarm_id = choice
        ...  # evaluate a particle of swarm_id
        coordinator.record_model_result(model_id, particle, score, completed=True, matured=True)
        coordinator.periodic_update()
"""

from __future__ import annotations

import logging
from typing import Iterable

from hypersearch.config import SearchConfig
from hypersearch.core.state import SwarmId, SwarmStatus
from hypersearch.core.store import SwarmStateStore
from hypersearch.interfaces import ParticleState, RecordStore, WorkCanceller
from hypersearch.logging_utils import EventLogger
from hypersearch.results import ResultsDB
from hypersearch.terminator import SwarmTerminator
from hypersearch.utils.stop_condition import JobCancelledStopper, MaxModelsStopper, StopperProtocol

logger = logging.getLogger(__name__)


class SwarmCoordinator:
    """
    Decides what a worker should evaluate next and publishes swarm completions.

    Parameters:
        job_id: Key of the shared job record.
        config: Search configuration.
        record_store: Shared CAS-capable store holding the search state.
        results: Results index; a fresh ``ResultsDB`` when omitted.
        canceller: External canceller for running work (optional).
        event_logger: JSONL event sink (optional).
        stoppers: Extra stop conditions checked by :meth:`should_stop`. A job
            cancel flag and ``config.max_models`` are always checked too.
    """

    def __init__(
        self,
        job_id: str,
        config: SearchConfig,
        record_store: RecordStore,
        results: ResultsDB | None = None,
        canceller: WorkCanceller | None = None,
        event_logger: EventLogger | None = None,
        stoppers: Iterable[StopperProtocol] = (),
    ) -> None:
        self.job_id = job_id
        self.config = config
        self.results = results if results is not None else ResultsDB(maximize=config.maximize)
        self.canceller = canceller
        self.event_logger = event_logger
        self.stoppers = list(stoppers)
        self.stoppers.append(JobCancelledStopper())
        if config.max_models is not None:
            self.stoppers.append(MaxModelsStopper(config.max_models))

        self.terminator = SwarmTerminator(config.terminator)
        self.store = SwarmStateStore(job_id, config, record_store, self.results, canceller=self)
        self._search_over_reported = False

    def _log_event(self, event_type: str, payload: dict) -> None:
        if self.event_logger is not None:
            self.event_logger.log(event_type, {"job_id": self.job_id, **payload})

    # ------------------------------------------------------------------
    # Work cancellation

    def kill_swarm_particles(self, swarm_id: SwarmId) -> None:
        logger.info("Requesting cancellation of running particles in swarm %s", swarm_id)
        if self.canceller is not None:
            self.canceller.kill_swarm_particles(swarm_id)

    def cancel_models(self, model_ids: list[int]) -> None:
        if not model_ids:
            return
        logger.info("Requesting cancellation of models %s", model_ids)
        if self.canceller is not None:
            self.canceller.cancel_models(model_ids)

    # ------------------------------------------------------------------
    # Results

    def record_model_result(
        self,
        model_id: int,
        particle: ParticleState,
        err_score: float | None,
        *,
        completed: bool,
        matured: bool,
    ) -> float:
        """Record a (possibly partial) model result; returns the effective error score."""
        return self.results.update(model_id, particle, err_score, completed=completed, matured=matured)

    def periodic_update(self, exhausted_swarm_id: SwarmId | None = None) -> set[SwarmId]:
        """
        Sync with the shared state and publish any swarm completions.

        Args:
            exhausted_swarm_id: A swarm for which no new particle positions can
                be found; it becomes ``completing`` (or ``completed`` when none
                of its particles are still running).

        Returns:
            Swarms this call moved to ``completed``.
        """
        store = self.store
        store.read_state()

        exhausted_status: SwarmStatus | None = None
        if exhausted_swarm_id is not None:
            logger.info(
                "Removing swarm %s from the active set because we can't find any new unique particle positions",
                exhausted_swarm_id,
            )
            running = self.results.get_particle_infos(swarm_id=exhausted_swarm_id, matured=False)
            exhausted_status = SwarmStatus.COMPLETING if len(running) > 0 else SwarmStatus.COMPLETED

        completed_swarms: set[SwarmId] = set()

        # Completing swarms whose last running particles have since matured
        for swarm_id in store.get_completing_swarms():
            if len(self.results.get_particle_infos(swarm_id=swarm_id, matured=False)) == 0:
                completed_swarms.add(swarm_id)

        prior_completed = set(store.get_completed_swarms())
        matured_gens = self.results.get_matured_swarm_generations(self.config.min_particles_per_swarm)
        for matured in matured_gens:
            if matured.swarm_id in prior_completed:
                continue
            terminated = self.terminator.record_data_point(matured.swarm_id, matured.gen_idx, matured.best_score)
            logger.info(
                "Completed generation #%d of swarm '%s' with a best errScore of %s",
                matured.gen_idx, matured.swarm_id, matured.best_score,
            )
            for swarm_id in sorted(terminated):
                self._log_event(
                    "swarm_terminated",
                    {
                        "swarm_id": swarm_id,
                        "generation": matured.gen_idx,
                        "scores": list(self.terminator.swarm_scores.get(swarm_id, ())),
                    },
                )
            completed_swarms |= terminated

        # Keep trying until our changes are written or another worker made them for us
        while True:
            if self.config.kill_useless_swarms:
                store.kill_useless_swarms()
            if exhausted_swarm_id is not None:
                store.set_swarm_state(exhausted_swarm_id, exhausted_status)
            for swarm_id in sorted(completed_swarms):
                store.set_swarm_state(swarm_id, SwarmStatus.COMPLETED)

            if not store.is_dirty():
                break
            if store.write_state():
                self._cancel_unfinished_models(completed_swarms)
                break
            logger.debug("Job %s: lost the race publishing swarm completions, retrying", self.job_id)

        newly_completed = {
            swarm_id
            for swarm_id in completed_swarms
            if swarm_id not in prior_completed and store.state.swarms[swarm_id].status == SwarmStatus.COMPLETED
        }
        if exhausted_swarm_id is not None and exhausted_status == SwarmStatus.COMPLETED:
            if exhausted_swarm_id not in prior_completed:
                newly_completed.add(exhausted_swarm_id)

        for swarm_id in sorted(newly_completed):
            info = store.state.swarms[swarm_id]
            self._log_event(
                "swarm_completed",
                {"swarm_id": swarm_id, "best_model_id": info.best_model_id, "best_err_score": info.best_err_score},
            )
        self._report_search_over()
        return newly_completed

    def _cancel_unfinished_models(self, completed_swarms: set[SwarmId]) -> None:
        """
        Cancel still-running models of completed swarms, except the global best.

        Once the best model changes, the previous best notices and stops itself.
        """
        best_model_id, _ = self.results.best_model_id_and_err_score()
        for swarm_id in sorted(completed_swarms):
            infos = self.results.get_particle_infos(swarm_id=swarm_id, completed=False)
            self.cancel_models([model_id for model_id in infos.model_ids if model_id != best_model_id])

    def _report_search_over(self) -> None:
        if self.store.is_search_over() and not self._search_over_reported:
            self._search_over_reported = True
            best_model_id, best_err_score = self.results.best_model_id_and_err_score()
            logger.info("Job %s: search over, best model %s with errScore %s", self.job_id, best_model_id, best_err_score)
            self._log_event(
                "search_over",
                {
                    "last_good_sprint": self.store.state.last_good_sprint,
                    "best_model_id": best_model_id,
                    "best_err_score": best_err_score,
                },
            )

    # ------------------------------------------------------------------
    # Work selection

    def next_swarm(self) -> tuple[int, SwarmId] | None:
        """
        Pick the swarm this worker should add a particle to.

        Returns:
            ``(sprint_idx, swarm_id)``, or None when no sprint has work left.
        """
        sprint_idx = 0
        while True:
            active, no_more_sprints = self.store.is_sprint_active(sprint_idx)
            if no_more_sprints:
                logger.debug("Job %s: no more sprints to explore", self.job_id)
                self._report_search_over()
                return None
            if active:
                break
            sprint_idx += 1

        candidates = self.store.get_active_swarms(sprint_idx)
        if not candidates:
            return None
        swarm_id = min(candidates, key=lambda sid: (self.results.num_models(sid), sid))
        logger.debug("Job %s: selected swarm %s in sprint %d", self.job_id, swarm_id, sprint_idx)
        self._log_event("sprint_selected", {"sprint_idx": sprint_idx, "swarm_id": swarm_id})
        return sprint_idx, swarm_id

    def should_stop(self) -> bool:
        if not self.store.is_dirty():
            self.store.read_state()
        if self.store.is_search_over():
            self._report_search_over()
            return True
        return any(stopper(self) for stopper in self.stoppers)
