import math

from hypersearch.interfaces import ParticleState
from hypersearch.results import MaturedSwarmGeneration, ResultsDB


def _particle(particle_id, swarm_id, gen_idx=0):
    return ParticleState(particle_id=particle_id, gen_idx=gen_idx, swarm_id=swarm_id)


def test_unmatured_results_score_infinity():
    db = ResultsDB()

    assert math.isinf(db.update(1, _particle("p1", "a"), 0.5, completed=False, matured=False))
    assert db.best_model_id_and_err_score() == (None, math.inf)

    # Completion implies maturity
    assert db.update(1, _particle("p1", "a"), 0.5, completed=True, matured=False) == 0.5
    assert db.best_model_id_and_err_score() == (1, 0.5)
    assert db.get_num_completed_models() == 1
    assert db.num_models() == 1


def test_maximised_metrics_are_negated():
    db = ResultsDB(maximize=True)

    db.update(1, _particle("p1", "a"), 0.8, completed=True, matured=True)
    db.update(2, _particle("p2", "a"), 0.9, completed=True, matured=True)

    assert db.best_model_id_and_err_score() == (2, -0.9)


def test_best_per_swarm_and_generation():
    db = ResultsDB()
    db.update(1, _particle("p1", "a", 0), 3.0, completed=True, matured=True)
    db.update(2, _particle("p1", "a", 1), 1.0, completed=True, matured=True)
    db.update(3, _particle("p2", "b", 0), 2.0, completed=True, matured=True)

    assert db.best_model_id_and_err_score("a") == (2, 1.0)
    assert db.best_model_id_and_err_score("a", gen_idx=0) == (1, 3.0)
    assert db.best_model_id_and_err_score("b") == (3, 2.0)
    assert db.best_model_id_and_err_score("zzz") == (None, math.inf)
    assert db.num_models("a") == 2
    assert db.num_models("zzz") == 0


def test_particle_info_filters():
    db = ResultsDB()
    db.update(1, _particle("p1", "a", 0), 1.0, completed=True, matured=True)
    db.update(2, _particle("p2", "a", 0), None, completed=False, matured=False)
    db.update(3, _particle("p3", "b", 0), 2.0, completed=False, matured=True)

    running = db.get_particle_infos(swarm_id="a", matured=False)
    assert running.model_ids == [2]
    assert len(db.get_particle_infos(completed=False)) == 2
    assert len(db.get_particle_infos(gen_idx=1)) == 0

    info = db.get_particle_info(3)
    assert info.swarm_id == "b"
    assert info.matured and not info.completed
    assert info.err_score == 2.0


def test_matured_generations_are_reported_once_and_in_order():
    db = ResultsDB()
    db.update(1, _particle("p1", "a", 0), 2.0, completed=True, matured=True)
    db.update(2, _particle("p2", "a", 1), 1.0, completed=True, matured=True)
    db.update(3, _particle("p3", "a", 0), None, completed=False, matured=False)

    # Generation 0 still has a running particle, which also holds back generation 1
    assert db.get_matured_swarm_generations(min_particles=1) == []

    db.update(3, _particle("p3", "a", 0), 4.0, completed=True, matured=True)

    assert db.get_matured_swarm_generations(min_particles=1) == [
        MaturedSwarmGeneration("a", 0, 2.0),
        MaturedSwarmGeneration("a", 1, 1.0),
    ]
    assert db.get_matured_swarm_generations(min_particles=1) == []


def test_matured_generation_needs_enough_particles():
    db = ResultsDB()
    db.update(1, _particle("p1", "a", 0), 2.0, completed=True, matured=True)

    assert db.get_matured_swarm_generations(min_particles=2) == []

    db.update(2, _particle("p2", "a", 0), 1.5, completed=True, matured=True)
    assert db.get_matured_swarm_generations(min_particles=2) == [MaturedSwarmGeneration("a", 0, 1.5)]

