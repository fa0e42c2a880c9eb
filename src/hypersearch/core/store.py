"""
Shared swarm/sprint lifecycle, synchronised through optimistic concurrency.

The whole search state is one JSON document stored in a single field of the
job record. Workers never lock it: they read it, apply their change locally
and write it back with ``set_field_if_equal`` against the exact text they
read. A worker that loses the race throws its local copy away, adopts the
winner's document and recomputes its change from there.
"""

from __future__ import annotations

import itertools
import logging
import math
import time
from collections import Counter

from hypersearch.config import SearchConfig, SearchType
from hypersearch.core.state import (
    SearchState,
    SwarmEncoderState,
    SwarmId,
    SwarmStatus,
    can_transition,
    encoder_name_from_key,
    encoders_in,
    initial_search_state,
    swarm_id_for,
)
from hypersearch.interfaces import RecordStore, ResultsIndex, WorkCanceller

logger = logging.getLogger(__name__)

STATE_FIELD = "engWorkerState"
TIMESTAMP_ENCODER_SUFFIXES = ("_timeOfDay", "_weekend", "_dayOfWeek")
_MIN_BASE_ERR_SCORE = 0.00001


def _is_missing(score: float | None) -> bool:
    return score is None or not math.isfinite(score)


def _score_sort_key(score: float | None) -> tuple[bool, float]:
    # Missing scores sort after every real score
    return (_is_missing(score), score if not _is_missing(score) else 0.0)


class SwarmStateStore:
    """
    Worker-local view of the shared hypersearch state.

    Parameters:
        job_id: Key of the job record holding the state document.
        config: Search configuration (encoders, search type, branching limits...).
        record_store: Shared store providing get / compare-and-swap on one field.
        results: Results index used to look up best models and particle counts.
        canceller: Asked to stop running work whenever a swarm is killed.
    """

    def __init__(
        self,
        job_id: str,
        config: SearchConfig,
        record_store: RecordStore,
        results: ResultsIndex,
        canceller: WorkCanceller | None = None,
    ) -> None:
        self.job_id = job_id
        self.config = config
        self.record_store = record_store
        self.results = results
        self.canceller = canceller

        # Current state plus local working changes
        self._state: SearchState = SearchState()
        # Exact text last read from / written to the record store
        self._prior_text: str | None = None
        # Set whenever the local copy diverges from _prior_text
        self._dirty = False

        self.read_state()

    # ------------------------------------------------------------------
    # Persistence

    @property
    def state(self) -> SearchState:
        return self._state

    def is_dirty(self) -> bool:
        return self._dirty

    def is_search_over(self) -> bool:
        return self._state.search_over

    def read_state(self) -> None:
        """Replace the local state with the shared document, creating it if needed."""
        prior_text = self.record_store.get_field(self.job_id, STATE_FIELD)

        if prior_text is None:
            initial = initial_search_state(self.config)
            # Does nothing if another worker initialised the search first
            created = self.record_store.set_field_if_equal(self.job_id, STATE_FIELD, initial.to_json(), None)
            logger.debug(
                "Job %s: %s initial hypersearch state with %d swarm(s)",
                self.job_id,
                "created" if created else "lost race creating",
                len(initial.swarms),
            )
            prior_text = self.record_store.get_field(self.job_id, STATE_FIELD)
            assert prior_text is not None, "record store returned nothing right after a write"

        self._prior_text = prior_text
        self._state = SearchState.from_json(prior_text)
        self._dirty = False

    def write_state(self) -> bool:
        """
        Push local changes to the record store.

        Returns:
            True if there was nothing to write or the write succeeded. False if
            another worker changed the document since we read it; in that case
            the local state has been replaced with theirs and the caller must
            recompute its change.
        """
        if not self._dirty:
            return True

        self._state.last_update_time = time.time()
        new_text = self._state.to_json()
        success = self.record_store.set_field_if_equal(self.job_id, STATE_FIELD, new_text, self._prior_text)

        if success:
            logger.debug("Job %s: hypersearch state updated (%d swarms, %d sprints)",
                         self.job_id, len(self._state.swarms), len(self._state.sprints))
            self._prior_text = new_text
            self._dirty = False
        else:
            logger.debug("Job %s: hypersearch state changed underneath us, reloading", self.job_id)
            self.read_state()
            logger.info("Job %s: hypersearch state set by another worker: active swarms %s",
                        self.job_id, self._state.active_swarms)
        return success

    # ------------------------------------------------------------------
    # Queries

    def get_all_swarms(self, sprint_idx: int) -> list[SwarmId]:
        return [swarm_id for swarm_id, info in self._state.swarms.items() if info.sprint_idx == sprint_idx]

    def get_active_swarms(self, sprint_idx: int | None = None) -> list[SwarmId]:
        """Active swarms (still taking new particles), optionally limited to one sprint."""
        return [
            swarm_id
            for swarm_id, info in self._state.swarms.items()
            if info.status == SwarmStatus.ACTIVE and (sprint_idx is None or info.sprint_idx == sprint_idx)
        ]

    def get_non_killed_swarms(self, sprint_idx: int) -> list[SwarmId]:
        return [
            swarm_id
            for swarm_id, info in self._state.swarms.items()
            if info.sprint_idx == sprint_idx and info.status != SwarmStatus.KILLED
        ]

    def get_completed_swarms(self) -> list[SwarmId]:
        return [swarm_id for swarm_id, info in self._state.swarms.items() if info.status == SwarmStatus.COMPLETED]

    def get_completing_swarms(self) -> list[SwarmId]:
        return [swarm_id for swarm_id, info in self._state.swarms.items() if info.status == SwarmStatus.COMPLETING]

    def best_model_in_completed_swarm(self, swarm_id: SwarmId) -> tuple[int | None, float | None]:
        info = self._state.swarms[swarm_id]
        return info.best_model_id, info.best_err_score

    def best_model_in_completed_sprint(self, sprint_idx: int) -> tuple[int | None, float | None]:
        info = self._state.sprints[sprint_idx]
        return info.best_model_id, info.best_err_score

    def best_model_in_sprint(self, sprint_idx: int) -> tuple[int | None, float]:
        """Best model so far in a sprint that may still be running."""
        best_model_id: int | None = None
        best_err_score = math.inf
        for swarm_id in self.get_all_swarms(sprint_idx):
            info = self._state.swarms[swarm_id]
            if info.status == SwarmStatus.COMPLETED and info.best_err_score is not None:
                model_id, err_score = info.best_model_id, info.best_err_score
            else:
                model_id, err_score = self.results.best_model_id_and_err_score(swarm_id)
            if err_score is not None and err_score < best_err_score:
                best_model_id, best_err_score = model_id, err_score
        return best_model_id, best_err_score

    def any_good_sprints_active(self) -> bool:
        """True while any sprint at or before ``last_good_sprint`` is still active."""
        last_good = self._state.last_good_sprint
        good_sprints = self._state.sprints if last_good is None else self._state.sprints[: last_good + 1]
        return any(sprint.status == SwarmStatus.ACTIVE for sprint in good_sprints)

    def is_sprint_completed(self, sprint_idx: int) -> bool:
        if sprint_idx >= len(self._state.sprints):
            return False
        return self._state.sprints[sprint_idx].status == SwarmStatus.COMPLETED

    def get_field_contributions(self) -> tuple[dict[str, float], dict[str, float]]:
        """
        Estimate how much each single field improves the error score.

        Returns:
            ``(pct_contributions, abs_contributions)`` keyed by field name. A
            positive value means the field beats the baseline.
        """
        # A fast search has a single sprint, so contributions are not defined
        if self.config.is_fast_search:
            return {}, {}

        field_scores: list[tuple[float | None, str]] = []
        for swarm_id, info in self._state.swarms.items():
            encoders = encoders_in(swarm_id)
            if len(encoders) != 1:
                continue
            best_score = info.best_err_score
            # Not completed yet (e.g. we stopped early): use the best score so far
            if best_score is None:
                _, best_score = self.results.best_model_id_and_err_score(swarm_id)
            field_scores.append((best_score, encoder_name_from_key(encoders[0])))

        base_err_score: float | None
        if self.config.search_type == SearchType.LEGACY_TEMPORAL:
            # Sprint 0 tried only the predicted field; it is the base and each
            # 2-field swarm of sprint 1 measures the field it adds
            assert len(field_scores) == 1, f"expected one single-field swarm, found {len(field_scores)}"
            base_err_score, base_field = field_scores[0]
            for swarm_id, info in self._state.swarms.items():
                fields = [encoder_name_from_key(name) for name in encoders_in(swarm_id)]
                if len(fields) != 2 or base_field not in fields:
                    continue
                fields.remove(base_field)
                field_scores.append((info.best_err_score, fields[0]))
        else:
            ranked = sorted(field_scores, key=lambda item: _score_sort_key(item[0]))
            max_branching = self.config.max_branching
            if max_branching > 0 and len(ranked) > max_branching:
                # Worst field within the top max_branching+1 gets a contribution of 0
                base_err_score = ranked[max_branching][0]
            else:
                base_err_score = ranked[0][0] if ranked else None

        pct_contributions: dict[str, float] = {}
        abs_contributions: dict[str, float] = {}

        # No base score: we stopped before anything finished
        if _is_missing(base_err_score):
            logger.debug("FieldContributions: no base score yet")
            return pct_contributions, abs_contributions

        if abs(base_err_score) < _MIN_BASE_ERR_SCORE:
            base_err_score = _MIN_BASE_ERR_SCORE

        for err_score, field_name in field_scores:
            if _is_missing(err_score):
                pct_contributions[field_name] = 0.0
                abs_contributions[field_name] = 0.0
            else:
                pct_contributions[field_name] = (base_err_score - err_score) * 100.0 / base_err_score
                abs_contributions[field_name] = base_err_score - err_score

        logger.debug("FieldContributions: %s", pct_contributions)
        return pct_contributions, abs_contributions

    # ------------------------------------------------------------------
    # Mutations

    def set_swarm_state(self, swarm_id: SwarmId, new_status: SwarmStatus) -> None:
        """
        Move a swarm to ``new_status`` and recompute its sprint and the search status.

        Backward or stale transitions (e.g. ``completing`` after another worker
        already saw ``completed``) are ignored. Changes are local until
        :meth:`write_state`.
        """
        if new_status == SwarmStatus.UNSET:
            raise ValueError("A swarm can not be moved back to 'unset'")

        while True:
            info = self._state.swarms[swarm_id]
            if info.status == new_status:
                return
            if not can_transition(info.status, new_status):
                logger.debug("Ignoring stale transition of swarm %s: %s -> %s",
                             swarm_id, info.status.value, new_status.value)
                return

            self._dirty = True
            logger.info("Swarm %s: %s -> %s", swarm_id, info.status.value, new_status.value)
            info.status = new_status
            if new_status == SwarmStatus.COMPLETED:
                info.best_model_id, info.best_err_score = self.results.best_model_id_and_err_score(swarm_id)

            if new_status != SwarmStatus.ACTIVE and swarm_id in self._state.active_swarms:
                self._state.active_swarms.remove(swarm_id)

            if new_status == SwarmStatus.KILLED:
                self._kill_swarm_particles(swarm_id)

            # With speculative particles, make sure every possible swarm of this
            # sprint exists before we can decide that the sprint is done
            sprint_idx = info.sprint_idx
            state_before = self._state
            self.is_sprint_active(sprint_idx)
            if self._state is state_before:
                break
            # Lost a race while expanding the sprint; redo the change on the fresh state

        self._update_sprint_status(sprint_idx)

    def _update_sprint_status(self, sprint_idx: int) -> None:
        sprint_info = self._state.sprints[sprint_idx]

        status_counts: Counter[SwarmStatus] = Counter()
        best_model_ids: list[int | None] = []
        best_err_scores: list[float] = []
        for info in self._state.swarms.values():
            if info.sprint_idx != sprint_idx:
                continue
            status_counts[info.status] += 1
            if info.status == SwarmStatus.COMPLETED and not _is_missing(info.best_err_score):
                best_model_ids.append(info.best_model_id)
                best_err_scores.append(info.best_err_score)

        if status_counts[SwarmStatus.ACTIVE] > 0:
            sprint_status = SwarmStatus.ACTIVE
        elif status_counts[SwarmStatus.COMPLETING] > 0:
            sprint_status = SwarmStatus.COMPLETING
        else:
            sprint_status = SwarmStatus.COMPLETED

        if sprint_info.status != sprint_status:
            self._dirty = True
            sprint_info.status = sprint_status

        if sprint_status != SwarmStatus.COMPLETED:
            return

        # Sprint best across its swarms; first index wins ties
        if best_err_scores:
            which_idx = min(range(len(best_err_scores)), key=best_err_scores.__getitem__)
            best = (best_model_ids[which_idx], best_err_scores[which_idx])
        else:
            # Everything was killed, so the sprint contributed nothing
            best = (None, math.inf)
        if (sprint_info.best_model_id, sprint_info.best_err_score) != best:
            self._dirty = True
            sprint_info.best_model_id, sprint_info.best_err_score = best
        logger.info("Sprint %d completed: best model %s, errScore %s", sprint_idx, best[0], best[1])

        best_prior = math.inf
        for idx in range(sprint_idx):
            prior = self._state.sprints[idx]
            err_score = prior.best_err_score if prior.status == SwarmStatus.COMPLETED else None
            if err_score is None:
                err_score = math.inf
            best_prior = min(best_prior, err_score)

        # No better than an earlier sprint: stop exploring further sprints
        if sprint_info.best_err_score >= best_prior:
            last_good = sprint_idx - 1
            current = self._state.last_good_sprint
            if current is None or last_good < current:
                self._dirty = True
                self._state.last_good_sprint = last_good
                logger.info("Sprint %d did not improve on %s; last good sprint is %d",
                            sprint_idx, best_prior, last_good)

        if self._state.last_good_sprint is not None and not self.any_good_sprints_active():
            if not self._state.search_over:
                self._dirty = True
                self._state.search_over = True
                logger.info("Job %s: all good sprints finished, search is over", self.job_id)

    def _kill_swarm_particles(self, swarm_id: SwarmId) -> None:
        if self.canceller is None:
            logger.debug("No canceller configured; running work of swarm %s keeps going", swarm_id)
            return
        self.canceller.kill_swarm_particles(swarm_id)

    def is_sprint_active(self, sprint_idx: int) -> tuple[bool, bool]:
        """
        Report whether ``sprint_idx`` has outstanding work, creating it if needed.

        Sprints must be asked about in order, from 0 up. With speculative
        particles a sprint may be created before its predecessor completes; it
        starts with one swarm per base set and grows by another swarm each
        time all of its active swarms have ``min_particles_per_swarm`` running
        particles.

        Returns:
            ``(active, no_more_sprints)``
        """
        while True:
            num_existing_sprints = len(self._state.sprints)
            if sprint_idx > num_existing_sprints:
                raise ValueError(
                    f"Sprint {sprint_idx} requested before sprint {num_existing_sprints} exists"
                )

            if sprint_idx < num_existing_sprints:
                active = self._state.sprints[sprint_idx].status == SwarmStatus.ACTIVE
                if not self.config.speculative_particles or not active:
                    return active, False

                # Any swarm with room for more particles keeps the sprint busy
                for swarm_id in self.get_active_swarms(sprint_idx):
                    running = self.results.get_particle_infos(swarm_id=swarm_id, matured=False)
                    if len(running) < self.config.min_particles_per_swarm:
                        return True, False
                # All at capacity: try to add another swarm below

            if self._state.last_good_sprint is not None:
                return False, True

            # A fast search only ever runs sprint 0
            if self.config.is_fast_search:
                return False, True

            new_swarm_ids = self._plan_new_swarms(sprint_idx)

            if not new_swarm_ids:
                if self.get_all_swarms(sprint_idx):
                    return True, False
                # Empty sprint and only bad fields left: the search is exhausted
                return False, True

            self._dirty = True
            if len(self._state.sprints) == sprint_idx:
                self._state.sprints.append(SwarmEncoderState(status=SwarmStatus.ACTIVE))
            for swarm_id in new_swarm_ids:
                self._state.swarms[swarm_id] = SwarmEncoderState(status=SwarmStatus.ACTIVE, sprint_idx=sprint_idx)
            self._state.active_swarms = self.get_active_swarms()

            if self.write_state():
                logger.info("Sprint %d: added swarm(s) %s", sprint_idx, new_swarm_ids)
                return True, False

            logger.debug("Sprint %d: lost the race adding %s, recomputing", sprint_idx, new_swarm_ids)

    def _plan_new_swarms(self, sprint_idx: int) -> list[SwarmId]:
        """Swarm ids to add to ``sprint_idx`` given the current state; no side effects."""
        state = self._state
        config = self.config
        prev_idx = sprint_idx - 1

        # Base encoder sets: the best swarm of a completed previous sprint, or
        # every surviving swarm of a previous sprint that is still running
        base_encoder_sets: list[list[str]] = []
        if sprint_idx > 0 and state.sprints[prev_idx].status == SwarmStatus.COMPLETED:
            best_swarm_id = self._best_swarm_of_completed_sprint(prev_idx)
            if best_swarm_id is not None:
                base_encoder_sets.append(encoders_in(best_swarm_id))
        elif sprint_idx > 0:
            base_encoder_sets.extend(encoders_in(swarm_id) for swarm_id in self.get_non_killed_swarms(prev_idx))

        encoder_add_set = self._candidate_encoders(sprint_idx)
        speculative = sprint_idx > 0 and len(self.get_active_swarms(prev_idx)) > 0

        new_swarm_ids: list[SwarmId] = []

        if (
            config.search_type in (SearchType.TEMPORAL, SearchType.LEGACY_TEMPORAL)
            and sprint_idx == 2
            and (config.try_all_3_field_combinations or config.try_all_3_field_combinations_w_timestamps)
        ):
            predicted = config.predicted_field_encoder
            if config.try_all_3_field_combinations:
                new_encoders = [name for name in config.encoder_names if name != predicted]
            else:
                # Make sure the timestamp encoders are part of the mix
                new_encoders = [name for name in encoder_add_set if name != predicted]
                new_encoders.extend(
                    name for name in config.encoder_names if name.endswith(TIMESTAMP_ENCODER_SUFFIXES)
                )
            new_encoders = list(dict.fromkeys(new_encoders))

            for combo in itertools.combinations(new_encoders, 2):
                members = list(combo) if predicted is None else [*combo, predicted]
                new_swarm_id = swarm_id_for(members)
                if new_swarm_id in state.swarms or new_swarm_id in new_swarm_ids:
                    continue
                new_swarm_ids.append(new_swarm_id)
                if speculative:
                    break
        else:
            # Grow each base set by one encoder
            black_listed = set(state.black_listed_encoders)
            for base_set in base_encoder_sets:
                for encoder in encoder_add_set:
                    if encoder in black_listed or encoder in base_set:
                        continue
                    new_swarm_id = swarm_id_for([*base_set, encoder])
                    if new_swarm_id in state.swarms or new_swarm_id in new_swarm_ids:
                        continue
                    new_swarm_ids.append(new_swarm_id)
                    # Bound the fan-out of a speculative sprint
                    if speculative:
                        break

        return sorted(new_swarm_ids)

    def _best_swarm_of_completed_sprint(self, sprint_idx: int) -> SwarmId | None:
        """The completed swarm holding the sprint best, read from shared state only."""
        best_model_id, _ = self.best_model_in_completed_sprint(sprint_idx)
        if best_model_id is None:
            return None
        for swarm_id in self.get_all_swarms(sprint_idx):
            info = self._state.swarms[swarm_id]
            if info.status == SwarmStatus.COMPLETED and info.best_model_id == best_model_id:
                return swarm_id
        return None

    def _candidate_encoders(self, sprint_idx: int) -> list[str]:
        """Encoders eligible to be added to the base sets of ``sprint_idx``."""
        config = self.config

        limit_fields = False
        base_sprint_idx = 0
        if config.limits_fields:
            if config.search_type in (SearchType.TEMPORAL, SearchType.CLASSIFICATION):
                if sprint_idx >= 1:
                    limit_fields, base_sprint_idx = True, 0
            elif config.search_type == SearchType.LEGACY_TEMPORAL:
                if sprint_idx >= 2:
                    limit_fields, base_sprint_idx = True, 1
            else:
                raise ValueError(f"Unimplemented search type {config.search_type}")

        if not limit_fields:
            return list(config.encoder_names)

        to_remove: set[str] = set()
        if config.min_field_contribution >= 0:
            pct_contributions, _ = self.get_field_contributions()
            logger.debug("FieldContributions min: %s", config.min_field_contribution)
            for field_name, pct in pct_contributions.items():
                if pct < config.min_field_contribution:
                    logger.debug("FieldContributions removing: %s", field_name)
                    to_remove.add(field_name)

        # Top max_branching swarms of the base sprint
        sprint_swarms = sorted(
            (
                (swarm_id, info.best_err_score)
                for swarm_id, info in self._state.swarms.items()
                if info.sprint_idx == base_sprint_idx
            ),
            key=lambda item: (_score_sort_key(item[1]), item[0]),
        )
        if config.max_branching > 0:
            sprint_swarms = sprint_swarms[: config.max_branching]

        encoder_add_set: list[str] = []
        for swarm_id, _ in sprint_swarms:
            for encoder in encoders_in(swarm_id):
                if encoder not in encoder_add_set and encoder_name_from_key(encoder) not in to_remove:
                    encoder_add_set.append(encoder)
        return encoder_add_set

    def kill_useless_swarms(self) -> None:
        """
        Kill speculative swarms that a now-completed earlier sprint rules out.

        Once sprint ``i - 1`` has no active or completing swarms left, every
        running swarm in sprint ``i`` must contain all encoders of the best
        swarm of sprint ``i - 1``; the others are killed.
        """
        num_existing_sprints = len(self._state.sprints)
        min_sprints = 2 if self.config.search_type == SearchType.LEGACY_TEMPORAL else 1
        if num_existing_sprints <= min_sprints:
            return

        def by_score(swarm_ids: list[SwarmId]) -> list[list[SwarmId]]:
            matrix: list[list[SwarmId]] = [[] for _ in range(num_existing_sprints)]
            for swarm_id in swarm_ids:
                matrix[self._state.swarms[swarm_id].sprint_idx].append(swarm_id)
            for row in matrix:
                row.sort(key=lambda sid: (_score_sort_key(self._state.swarms[sid].best_err_score), sid))
            return matrix

        completed_matrix = by_score(self.get_completed_swarms())
        active_matrix = by_score(self.get_active_swarms() + self.get_completing_swarms())

        try_all_3_field = (
            self.config.try_all_3_field_combinations or self.config.try_all_3_field_combinations_w_timestamps
        )
        to_kill: list[SwarmId] = []
        for i in range(1, num_existing_sprints):
            # Previous sprint still running: nothing to conclude yet
            if active_matrix[i - 1]:
                continue
            # Every 3-field combination is wanted in sprint 2
            if i == 2 and try_all_3_field:
                continue
            if not completed_matrix[i - 1]:
                continue
            best_encoders = encoders_in(completed_matrix[i - 1][0])
            for swarm_id in active_matrix[i]:
                current = set(encoders_in(swarm_id))
                if any(encoder not in current for encoder in best_encoders):
                    to_kill.append(swarm_id)

        if to_kill:
            logger.info("Killing useless swarms: %s", to_kill)
        for swarm_id in to_kill:
            self.set_swarm_state(swarm_id, SwarmStatus.KILLED)
