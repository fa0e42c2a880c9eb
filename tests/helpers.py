"""Builders for hand-made search states shared by the store and coordinator tests."""

from hypersearch.core.state import SearchState, SwarmEncoderState, SwarmStatus
from hypersearch.core.store import STATE_FIELD

JOB_ID = "job-1"


def swarm(status, sprint_idx, best_err_score=None, best_model_id=None):
    return SwarmEncoderState(
        status=SwarmStatus(status),
        best_model_id=best_model_id,
        best_err_score=best_err_score,
        sprint_idx=sprint_idx,
    )


def sprint(status, best_err_score=None, best_model_id=None):
    return SwarmEncoderState(status=SwarmStatus(status), best_model_id=best_model_id, best_err_score=best_err_score)


def seed_state(record_store, swarms, sprints, **kwargs):
    """Publish a hand-built search state so a new store picks it up."""
    state = SearchState(
        swarms=dict(swarms),
        sprints=list(sprints),
        active_swarms=[sid for sid, info in swarms.items() if info.status == SwarmStatus.ACTIVE],
        **kwargs,
    )
    assert state.is_consistent()
    assert record_store.set_field_if_equal(JOB_ID, STATE_FIELD, state.to_json(), None)
    return state
