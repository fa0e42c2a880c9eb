import pytest

from hypersearch.config import TerminatorConfig
from hypersearch.terminator import MilestoneOverrunError, SwarmTerminator


def test_young_swarms_are_never_terminated():
    terminator = SwarmTerminator(TerminatorConfig(maturity_window=3, max_generations=None))

    for generation in range(2):
        assert terminator.record_data_point("good", generation, 1.0) == set()
        assert terminator.record_data_point("awful", generation, 1000.0) == set()

    assert terminator.terminated_swarms == set()


def test_swarm_outside_milestone_tolerance_is_terminated():
    config = TerminatorConfig(maturity_window=3, max_generations=None, milestones=[1.0, 0.5, 0.33])
    terminator = SwarmTerminator(config)

    for generation, (x_score, y_score) in enumerate([(1.0, 1.0), (1.0, 1.6), (1.0, 1.6)]):
        x_flagged = terminator.record_data_point("X", generation, x_score)
        y_flagged = terminator.record_data_point("Y", generation, y_score)

    assert x_flagged == set()
    # 1.6 > 1.0 * (1 + 0.33)
    assert y_flagged == {"Y"}
    assert terminator.terminated_swarms == {"Y"}
    assert terminator.swarm_scores["Y"] == (1.0, 1.6, 1.6)
    assert terminator.swarm_bests["Y"] == (1.0, 1.0, 1.0)


def test_plateaued_swarm_is_terminated_once():
    config = TerminatorConfig(maturity_window=2, max_generations=None, termination_enabled=False)
    terminator = SwarmTerminator(config)

    assert terminator.record_data_point("s", 0, 1.0) == set()
    assert terminator.record_data_point("s", 1, 0.5) == set()
    assert terminator.record_data_point("s", 2, 0.5) == set()
    # Best has been 0.5 for two generations
    assert terminator.record_data_point("s", 3, 0.7) == {"s"}
    assert terminator.record_data_point("s", 4, 0.5) == set()
    assert terminator.terminated_swarms == {"s"}
    assert terminator.num_data_points("s") == 5


def test_swarm_past_max_generations_is_terminated():
    config = TerminatorConfig(maturity_window=1, max_generations=2, termination_enabled=False)
    terminator = SwarmTerminator(config)

    for generation, score in enumerate([3.0, 2.0, 1.0]):
        assert terminator.record_data_point("s", generation, score) == set()
    assert terminator.record_data_point("s", 3, 0.5) == {"s"}


def test_running_past_milestones_raises():
    config = TerminatorConfig(maturity_window=1, max_generations=None, milestones=[1.0])
    terminator = SwarmTerminator(config)

    terminator.record_data_point("s", 0, 2.0)
    with pytest.raises(MilestoneOverrunError):
        terminator.record_data_point("s", 1, 1.0)
    assert issubclass(MilestoneOverrunError, IndexError)

    # Nothing was recorded, so retrying the generation fails the same way
    assert terminator.num_data_points("s") == 1
    with pytest.raises(MilestoneOverrunError):
        terminator.record_data_point("s", 1, 1.0)


def test_generations_must_arrive_in_order():
    terminator = SwarmTerminator()
    with pytest.raises(AssertionError):
        terminator.record_data_point("s", 1, 1.0)


def test_unknown_swarm_has_no_data_points():
    assert SwarmTerminator().num_data_points("missing") == 0
