import threading

import pytest

from aiquant.domain.models import TrainingExample
from aiquant.trading.predictor import LogisticPredictor


def _examples():
    rows = [((0.9, 0.5, 0.2), 1), ((0.8, 0.6, 0.3), 1), ((0.2, 0.5, 0.8), 0), ((0.1, 0.4, 0.7), 0)]
    return [TrainingExample(features=f, label=y) for f, y in rows]


def test_untrained_scores_half():
    p = LogisticPredictor(3)
    assert not p.is_trained
    assert p.score((0.1, 0.2, 0.3)) == 0.5


def test_retrain_is_deterministic():
    a, b = LogisticPredictor(3, seed=3), LogisticPredictor(3, seed=3)
    a.retrain(_examples())
    b.retrain(_examples())
    assert a.to_dict()["weights"] == b.to_dict()["weights"]
    assert a.score((0.7, 0.5, 0.3)) == b.score((0.7, 0.5, 0.3))


def test_retrain_learns_separable_pattern():
    p = LogisticPredictor(3, epochs=800)
    p.retrain(_examples())
    assert p.trained_on == 4
    assert p.score((0.9, 0.5, 0.2)) > 0.5 > p.score((0.1, 0.5, 0.8))


def test_empty_retrain_keeps_state():
    p = LogisticPredictor(3)
    p.retrain(_examples())
    before = p.to_dict()
    p.retrain([])
    assert p.to_dict() == before


@pytest.mark.parametrize("bad", [(0.1, 0.2), (0.1, float("nan"), 0.3)])
def test_score_rejects_malformed_features(bad):
    with pytest.raises(ValueError):
        LogisticPredictor(3).score(bad)


def test_scores_stay_valid_during_concurrent_retrain():
    p = LogisticPredictor(3, epochs=2000)
    scores = []

    def reader():
        for _ in range(200):
            scores.append(p.score((0.5, 0.5, 0.5)))

    t = threading.Thread(target=reader)
    t.start()
    p.retrain(_examples())
    t.join()
    assert all(0.0 < s < 1.0 for s in scores)


def test_from_config(config):
    p = LogisticPredictor.from_config(config, 3)
    assert p.seed == 7
    assert p.epochs == 300
