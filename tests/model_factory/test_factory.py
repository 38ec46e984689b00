import warnings

import pytest
import numpy as np
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.neighbors import KNeighborsClassifier

from modules.model_factory import ModelFactory, ModelFamily
from modules.model_factory.model_factory import PENALTY_FROM_L1_RATIO
from utils.exceptions import ConfigurationError, ModelTrainingFailure

CLASSES = ['black', 'draw', 'white']


@pytest.fixture
def xy():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(90, 4))
    y = np.array(CLASSES * 30)
    X[:, 0] += np.array([0.0, 1.0, 2.0] * 30)
    return X, y


def test_registry_order():
    assert ModelFactory.get_available_models() == ['nearest_neighbor', 'multinomial', 'elastic_net', 'random_forest']
    assert ModelFactory.family_order('nearest_neighbor') == 0
    assert ModelFactory.family_order('random_forest') == 3
    assert ModelFactory.family_order('unknown') == 4


def test_unknown_family():
    with pytest.raises(ConfigurationError, match="Unknown model family"):
        ModelFactory.create('svm')


def test_estimator_mapping():
    knn = ModelFactory.create('nearest_neighbor').build({'neighbors': 7}, 100)
    assert isinstance(knn, KNeighborsClassifier)
    assert knn.n_neighbors == 7 and knn.weights == 'distance'

    mlr = ModelFactory.create('multinomial').build({}, 100)
    assert isinstance(mlr, LogisticRegression)
    assert np.isinf(mlr.C)

    enet = ModelFactory.create('elastic_net', seed=5).build({'penalty': 0.01, 'mixture': 0.5}, 200)
    assert enet.C == pytest.approx(1.0 / (0.01 * 200))
    assert enet.l1_ratio == 0.5 and enet.solver == 'saga'
    assert enet.random_state == 5

    rf = ModelFactory.create('random_forest', seed=9).build({'mtry': 2, 'trees': 50, 'min_n': 10}, 100)
    assert isinstance(rf, RandomForestClassifier)
    assert (rf.max_features, rf.n_estimators, rf.min_samples_split, rf.random_state) == (2, 50, 10, 9)
    assert rf.n_jobs == 1


def test_options_override_defaults():
    family = ModelFactory.create('multinomial', options={'max_iter': 50, 'not_a_param': 1})
    model = family.build({}, 10)
    assert model.max_iter == 50


@pytest.mark.parametrize("family, params", [
    ('nearest_neighbor', {'neighbors': 3}),
    ('multinomial', {}),
    ('elastic_net', {'penalty': 1e-3, 'mixture': 0.5}),
    ('random_forest', {'mtry': 2, 'trees': 20, 'min_n': 5}),
])
def test_predict_proba_rows_sum_to_one(xy, family, params):
    X, y = xy
    fam = ModelFactory.create(family, seed=0)
    model = fam.train(X, y, params)
    proba = fam.predict_proba(model, X, CLASSES)

    assert proba.shape == (len(X), 3)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)


def test_class_unseen_in_training_gets_zero(xy):
    X, y = xy
    keep = y != 'draw'
    fam = ModelFactory.create('nearest_neighbor')
    model = fam.train(X[keep], y[keep], {'neighbors': 3})
    proba = fam.predict_proba(model, X, CLASSES)

    np.testing.assert_array_equal(proba[:, 1], 0.0)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)


def test_training_errors_wrapped(xy):
    X, y = xy
    fam = ModelFactory.create('nearest_neighbor')
    # more neighbours than training rows
    with pytest.raises(ModelTrainingFailure, match="nearest_neighbor"):
        model = fam.train(X[:5], y[:5], {'neighbors': 10})
        fam.predict_proba(model, X, CLASSES)


def test_family_is_abstract():
    with pytest.raises(TypeError):
        ModelFamily()


def test_elastic_net_trains_without_penalty_deprecation(xy):
    X, y = xy
    family = ModelFactory.create('elastic_net', seed=0)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        model = family.train(X, y, {'penalty': 1e-4, 'mixture': 0.5})

    assert not [w for w in caught if "'penalty' was deprecated" in str(w.message)]
    proba = family.predict_proba(model, X, CLASSES)
    assert np.allclose(proba.sum(axis=1), 1.0)


def test_elastic_net_penalty_argument_matches_installed_version():
    enet = ModelFactory.create('elastic_net').build({'penalty': 0.01, 'mixture': 0.5}, 200)
    if PENALTY_FROM_L1_RATIO:
        assert enet.penalty != 'elasticnet'
    else:
        assert enet.penalty == 'elasticnet'
