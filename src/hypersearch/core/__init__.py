from .state import (  # noqa: F401
    SearchState,
    SprintState,
    SwarmEncoderState,
    SwarmStatus,
    can_transition,
    encoder_name_from_key,
    encoders_in,
    initial_search_state,
    swarm_id_for,
)
from .store import STATE_FIELD, SwarmStateStore  # noqa: F401
