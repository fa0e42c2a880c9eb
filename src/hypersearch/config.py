"""
Central configuration knobs for the swarm hypersearch coordinator.

Defaults mirror the values a medium-sized search uses. Callers can override
values by passing keyword args, by starting from one of the presets below,
or by exporting ``HYPERSEARCH_*`` environment variables and running the
config through :func:`config_from_env`.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Sequence


class SearchType(str, enum.Enum):
    """Shape of the first sprint and of the field-limiting rules."""

    TEMPORAL = "temporal"
    CLASSIFICATION = "classification"
    LEGACY_TEMPORAL = "legacy_temporal"


def _default_milestones(num_generations: int) -> tuple[float, ...]:
    """
    Per-generation tolerance used by the cross-swarm comparison.

    Tolerance shrinks as the search matures: ``1 / (g + 1)`` for generation ``g``.

    Example:
        >>> _default_milestones(4)
        (1.0, 0.5, 0.3333333333333333, 0.25)
    """
    return tuple(1.0 / (gen + 1) for gen in range(num_generations))


@dataclass(slots=True)
class TerminatorConfig:
    """Knobs for :class:`hypersearch.terminator.SwarmTerminator`."""

    maturity_window: int = 5
    max_generations: int | None = 12  # None or negative means unlimited
    termination_enabled: bool = True
    milestones: Sequence[float] | None = None  # If None, auto-generates 1/(g+1)

    def __post_init__(self):
        if self.maturity_window < 1:
            raise ValueError(f"maturity_window must be >= 1, got {self.maturity_window}")
        if self.max_generations is not None and self.max_generations < 0:
            self.max_generations = None

        if self.milestones is None:
            # Cover every generation up to the one where a swarm is matured unconditionally
            count = self.max_generations + 2 if self.max_generations is not None else 12
            self.milestones = _default_milestones(count)
        else:
            self.milestones = tuple(float(m) for m in self.milestones)

        if self.termination_enabled and self.max_generations is not None:
            needed = self.max_generations + 2
            if len(self.milestones) < needed:
                raise ValueError(
                    f"milestones cover {len(self.milestones)} generations but max_generations="
                    f"{self.max_generations} needs {needed}"
                )


@dataclass(slots=True)
class SearchConfig:
    """Read-only search parameters supplied by the orchestrator."""

    encoder_names: Sequence[str]
    predicted_field_encoder: str | None = None
    search_type: SearchType = SearchType.TEMPORAL
    fixed_fields: Sequence[str] | None = None  # Fast search: sprint 0 only, one swarm

    # Field limiting: carry forward only the top ``max_branching`` single-field
    # swarms and drop fields contributing less than ``min_field_contribution``
    # percent. Non-positive branching / negative contribution disables each rule.
    max_branching: int = 0
    min_field_contribution: float = -1.0

    speculative_particles: bool = True
    min_particles_per_swarm: int = 5
    try_all_3_field_combinations: bool = False
    try_all_3_field_combinations_w_timestamps: bool = False
    kill_useless_swarms: bool = True

    max_models: int | None = None
    maximize: bool = False

    terminator: TerminatorConfig = field(default_factory=TerminatorConfig)

    def __post_init__(self):
        self.encoder_names = tuple(self.encoder_names)
        if not isinstance(self.search_type, SearchType):
            try:
                self.search_type = SearchType(self.search_type)
            except ValueError:
                raise ValueError(f"Unsupported search type: {self.search_type!r}") from None

        if self.fixed_fields is not None:
            self.fixed_fields = tuple(self.fixed_fields)
        elif not self.encoder_names:
            raise ValueError("At least one encoder name must be configured.")

        if self.search_type in (SearchType.CLASSIFICATION, SearchType.LEGACY_TEMPORAL):
            if self.predicted_field_encoder is None:
                raise ValueError(f"{self.search_type.value} searches require predicted_field_encoder")

        if self.min_particles_per_swarm < 1:
            raise ValueError(f"min_particles_per_swarm must be >= 1, got {self.min_particles_per_swarm}")
        if self.max_models is not None and self.max_models < 0:
            self.max_models = None

    @property
    def is_fast_search(self) -> bool:
        return self.fixed_fields is not None

    @property
    def limits_fields(self) -> bool:
        return self.max_branching > 0 or self.min_field_contribution >= 0


def small_swarm_config(encoder_names: Sequence[str], **overrides) -> SearchConfig:
    """Small swarm: a handful of particles and a single model, for smoke runs."""
    params = dict(min_particles_per_swarm=3, max_models=1)
    params.update(overrides)
    return SearchConfig(encoder_names=encoder_names, **params)


def medium_swarm_config(encoder_names: Sequence[str], **overrides) -> SearchConfig:
    params = dict(min_particles_per_swarm=5, max_models=200)
    params.update(overrides)
    return SearchConfig(encoder_names=encoder_names, **params)


def large_swarm_config(encoder_names: Sequence[str], **overrides) -> SearchConfig:
    """
    Large swarm: more particles per swarm and an exhaustive 3-field sprint that
    always mixes in the timestamp-derived encoders.
    """
    params = dict(min_particles_per_swarm=15, try_all_3_field_combinations_w_timestamps=True)
    params.update(overrides)
    return SearchConfig(encoder_names=encoder_names, **params)


def fast_search_config(
    fixed_fields: Sequence[str],
    *,
    encoder_names: Sequence[str] | None = None,
    **overrides,
) -> SearchConfig:
    """Fast search over exactly ``fixed_fields``: one swarm, one sprint."""
    names = tuple(encoder_names) if encoder_names is not None else tuple(
        name for name in fixed_fields if name != "_classifierInput"
    )
    return SearchConfig(encoder_names=names, fixed_fields=tuple(fixed_fields), **overrides)


DEFAULT_ENV_PREFIX = "HYPERSEARCH_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(value: str) -> int | None:
    parsed = int(value)
    return None if parsed < 0 else parsed


def config_from_env(
    base: SearchConfig,
    environ: Mapping[str, str] | None = None,
    *,
    prefix: str = DEFAULT_ENV_PREFIX,
) -> SearchConfig:
    """
    Return a copy of ``base`` with ``HYPERSEARCH_*`` overrides applied.

    Recognised variables (prefix omitted):
        MATURITY_WINDOW, MAX_GENERATIONS, ENABLE_TERMINATION,
        SPECULATIVE_PARTICLES, MIN_PARTICLES_PER_SWARM, MAX_BRANCHING,
        MIN_FIELD_CONTRIBUTION, MAX_MODELS
    """
    env = os.environ if environ is None else environ

    def lookup(name: str) -> str | None:
        value = env.get(prefix + name)
        return value if value not in (None, "") else None

    search_updates: dict[str, object] = {}
    terminator_updates: dict[str, object] = {}

    if (value := lookup("MATURITY_WINDOW")) is not None:
        terminator_updates["maturity_window"] = int(value)
    if (value := lookup("MAX_GENERATIONS")) is not None:
        terminator_updates["max_generations"] = _env_optional_int(value)
    if (value := lookup("ENABLE_TERMINATION")) is not None:
        terminator_updates["termination_enabled"] = _env_bool(value)
    if (value := lookup("SPECULATIVE_PARTICLES")) is not None:
        search_updates["speculative_particles"] = _env_bool(value)
    if (value := lookup("MIN_PARTICLES_PER_SWARM")) is not None:
        search_updates["min_particles_per_swarm"] = int(value)
    if (value := lookup("MAX_BRANCHING")) is not None:
        search_updates["max_branching"] = int(value)
    if (value := lookup("MIN_FIELD_CONTRIBUTION")) is not None:
        search_updates["min_field_contribution"] = float(value)
    if (value := lookup("MAX_MODELS")) is not None:
        search_updates["max_models"] = _env_optional_int(value)

    if terminator_updates:
        terminator = base.terminator
        if "max_generations" in terminator_updates:
            # Milestones were sized for the old generation cap; regenerate them
            terminator_updates.setdefault("milestones", None)
        search_updates["terminator"] = replace(terminator, **terminator_updates)

    if not search_updates:
        return base
    return replace(base, **search_updates)
