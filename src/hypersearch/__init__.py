"""
hypersearch package initialization.

Coordinates a swarm-based hyperparameter search across independent workers
that share one job record: swarms of encoder combinations are explored in
sprints of growing size, and all shared state is published with
compare-and-swap writes.
"""

from .config import (  # noqa: F401
    SearchConfig,
    SearchType,
    TerminatorConfig,
    config_from_env,
    fast_search_config,
    large_swarm_config,
    medium_swarm_config,
    small_swarm_config,
)
from .core import (  # noqa: F401
    SearchState,
    SwarmEncoderState,
    SwarmStateStore,
    SwarmStatus,
    initial_search_state,
    swarm_id_for,
)
from .interfaces import ParticleInfo, ParticleInfos, ParticleState  # noqa: F401
from .logging_utils import EventLogger, build_logger  # noqa: F401
from .orchestrator import SwarmCoordinator  # noqa: F401
from .records import DiskRecordStore, InMemoryRecordStore  # noqa: F401
from .results import ResultsDB  # noqa: F401
from .terminator import MilestoneOverrunError, SwarmTerminator  # noqa: F401
