"""
Shared hypersearch state document.

Every worker reads and writes one JSON blob describing the search. Example::

    {
      "swarms": {
        "a":   {"status": "completed", "best_model_id": 17, "best_err_score": 1.4, "sprint_idx": 0},
        "a.b": {"status": "active", "best_model_id": null, "best_err_score": null, "sprint_idx": 1}
      },
      "sprints": [
        {"status": "completed", "best_model_id": 17, "best_err_score": 1.4, "sprint_idx": null},
        {"status": "active", "best_model_id": null, "best_err_score": null, "sprint_idx": null}
      ],
      "active_swarms": ["a.b"],
      "last_good_sprint": null,
      "search_over": false,
      "black_listed_encoders": [],
      "last_update_time": 1718000000.0
    }
"""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from hypersearch.config import SearchConfig, SearchType

SWARM_ID_SEPARATOR = "."
ENCODER_KEY_SEPARATOR = "|"
CLASSIFIER_INPUT_FIELD = "_classifierInput"

SwarmId = str


class SwarmStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETING = "completing"
    COMPLETED = "completed"
    KILLED = "killed"
    UNSET = "unset"


# Forward-only lifecycle. Anything not listed is ignored as stale information.
_ALLOWED_TRANSITIONS: dict[SwarmStatus, frozenset[SwarmStatus]] = {
    SwarmStatus.UNSET: frozenset(
        {SwarmStatus.ACTIVE, SwarmStatus.COMPLETING, SwarmStatus.COMPLETED, SwarmStatus.KILLED}
    ),
    SwarmStatus.ACTIVE: frozenset({SwarmStatus.COMPLETING, SwarmStatus.COMPLETED, SwarmStatus.KILLED}),
    SwarmStatus.COMPLETING: frozenset({SwarmStatus.COMPLETED, SwarmStatus.KILLED}),
    SwarmStatus.COMPLETED: frozenset(),
    SwarmStatus.KILLED: frozenset(),
}


def can_transition(current: SwarmStatus, new: SwarmStatus) -> bool:
    """Return True if a swarm in ``current`` may move to ``new``."""
    return new in _ALLOWED_TRANSITIONS[current]


def swarm_id_for(encoders: Iterable[str]) -> SwarmId:
    """Normalise an encoder set into its swarm id (sorted, dot-joined)."""
    return SWARM_ID_SEPARATOR.join(sorted(set(encoders)))


def encoders_in(swarm_id: SwarmId) -> list[str]:
    return swarm_id.split(SWARM_ID_SEPARATOR)


def encoder_name_from_key(key: str) -> str:
    """
    Encoder keys may be fully qualified, e.g. ``modelParams|sensorParams|encoders|consumption``;
    the encoder name is the last ``|``-separated component.
    """
    return key.split(ENCODER_KEY_SEPARATOR)[-1]


@dataclass(slots=True)
class SwarmEncoderState:
    """Status record shared by swarms and sprints (sprints leave ``sprint_idx`` unset)."""

    status: SwarmStatus = SwarmStatus.ACTIVE
    best_model_id: int | None = None
    best_err_score: float | None = None
    sprint_idx: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "best_model_id": self.best_model_id,
            "best_err_score": self.best_err_score,
            "sprint_idx": self.sprint_idx,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SwarmEncoderState":
        score = data.get("best_err_score")
        return cls(
            status=SwarmStatus(data.get("status", SwarmStatus.UNSET.value)),
            best_model_id=data.get("best_model_id"),
            best_err_score=float(score) if score is not None else None,
            sprint_idx=data.get("sprint_idx"),
        )


SprintState = SwarmEncoderState


@dataclass
class SearchState:
    swarms: dict[SwarmId, SwarmEncoderState] = field(default_factory=dict)
    sprints: list[SprintState] = field(default_factory=list)
    active_swarms: list[SwarmId] = field(default_factory=list)
    last_good_sprint: int | None = None
    search_over: bool = False
    black_listed_encoders: list[str] = field(default_factory=list)
    last_update_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "swarms": {swarm_id: info.to_dict() for swarm_id, info in self.swarms.items()},
            "sprints": [sprint.to_dict() for sprint in self.sprints],
            "active_swarms": list(self.active_swarms),
            "last_good_sprint": self.last_good_sprint,
            "search_over": self.search_over,
            "black_listed_encoders": list(self.black_listed_encoders),
            "last_update_time": self.last_update_time,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchState":
        return cls(
            swarms={
                swarm_id: SwarmEncoderState.from_dict(info) for swarm_id, info in data.get("swarms", {}).items()
            },
            sprints=[SwarmEncoderState.from_dict(sprint) for sprint in data.get("sprints", [])],
            active_swarms=list(data.get("active_swarms", [])),
            last_good_sprint=data.get("last_good_sprint"),
            search_over=bool(data.get("search_over", False)),
            black_listed_encoders=list(data.get("black_listed_encoders", [])),
            last_update_time=float(data.get("last_update_time", 0.0)),
        )

    @classmethod
    def from_json(cls, text: str) -> "SearchState":
        return cls.from_dict(json.loads(text))

    def is_consistent(self) -> bool:
        for swarm_id, info in self.swarms.items():
            assert info.sprint_idx is not None and 0 <= info.sprint_idx < len(self.sprints), (
                f"Swarm {swarm_id} points at sprint {info.sprint_idx} of {len(self.sprints)}"
            )
            assert swarm_id == swarm_id_for(encoders_in(swarm_id)), f"Swarm id {swarm_id} is not normalised"
        active = sorted(swarm_id for swarm_id, info in self.swarms.items() if info.status == SwarmStatus.ACTIVE)
        assert sorted(self.active_swarms) == active, "active_swarms cache is out of date"
        return True


def initial_search_state(config: SearchConfig, now: float | None = None) -> SearchState:
    """
    Build the sprint-0 state for a brand new search.

    Raises:
        ValueError: a fixed field is not one of the configured encoders.
    """
    swarm_ids: list[SwarmId] = []

    if config.fixed_fields is not None:
        # Fast search: the first and only sprint has one swarm holding every fixed field
        encoder_set = []
        for fixed_field in config.fixed_fields:
            if fixed_field == CLASSIFIER_INPUT_FIELD:
                continue
            if fixed_field not in config.encoder_names:
                raise ValueError(
                    f"The field {fixed_field!r} specified in the fixed_fields list is not present in this model."
                )
            encoder_set.append(fixed_field)
        swarm_ids.append(swarm_id_for(encoder_set))

    elif config.search_type == SearchType.TEMPORAL:
        swarm_ids.extend(config.encoder_names)

    elif config.search_type == SearchType.CLASSIFICATION:
        # The predicted field can not be used as an input on its own
        swarm_ids.extend(name for name in config.encoder_names if name != config.predicted_field_encoder)

    elif config.search_type == SearchType.LEGACY_TEMPORAL:
        # The predicted field must always be present, so sprint 0 tries it alone
        swarm_ids.append(config.predicted_field_encoder)

    else:
        raise ValueError(f"Unsupported search type: {config.search_type}")

    swarms = {
        swarm_id: SwarmEncoderState(status=SwarmStatus.ACTIVE, sprint_idx=0) for swarm_id in swarm_ids
    }
    return SearchState(
        swarms=swarms,
        sprints=[SwarmEncoderState(status=SwarmStatus.ACTIVE)],
        active_swarms=list(swarms.keys()),
        last_update_time=time.time() if now is None else now,
    )
