import pytest
import numpy as np
import pandas as pd
import sys
import os
from numpy.random import default_rng

# Add parent directory to path to import from src
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.pipeline.scalesim.exceptions import ImputationModelFailure
from src.pipeline.scalesim.imputation_methods import (
    REGRESS, ConditionalModel, FCSImputation, ImputationModel, MVNImputation,
    default_conditional_models, get_imputation_method
)


@pytest.fixture(scope="module")
def ordinal_data():
    """Five correlated ordinal items and two complete covariates, ~20% of items missing."""
    rng = default_rng(2024)
    n = 300
    cov = 0.5 * np.ones((7, 7)) + 0.5 * np.eye(7)
    latent = rng.multivariate_normal(np.zeros(7), cov, size=n)
    items = np.digitize(latent[:, :5], [-0.8, -0.2, 0.4, 1.0]) + 1.0
    data = pd.DataFrame(items, columns=[f'i{k}' for k in range(1, 6)])
    data['x'] = latent[:, 5]
    data['z'] = latent[:, 6]
    mask = rng.uniform(size=(n, 5)) < 0.2
    data[data.columns[:5]] = data[data.columns[:5]].mask(mask)
    return data


@pytest.fixture(scope="module")
def item_model():
    return ImputationModel(targets=[f'i{k}' for k in range(1, 6)], auxiliaries=['x', 'z'])


def _assert_observed_kept(original, replicates, targets):
    observed = original[targets].notna()
    for rep in replicates:
        assert not rep[targets].isna().any().any(), "Every gap must be filled"
        pd.testing.assert_frame_equal(rep[targets][observed], original[targets][observed])


def test_default_conditional_models():
    models = default_conditional_models(['a', 'b'], ['x'], rules={'b': REGRESS})
    assert models[0] == ConditionalModel('a', ('b', 'x'))
    assert models[1] == ConditionalModel('b', ('a', 'x'), REGRESS)


def test_conditional_model_validation():
    with pytest.raises(ValueError, match="cannot predict itself"):
        ConditionalModel('a', ('a', 'x'))
    with pytest.raises(ValueError, match="Unknown conditional"):
        ConditionalModel('a', ('x',), 'forest')


def test_fcs_keeps_observed_and_fills_gaps(ordinal_data, item_model):
    fcs = FCSImputation(n_iter=3, donors=5)
    replicates = fcs.impute(ordinal_data, item_model, n_imputations=3, rng=default_rng(1))
    assert len(replicates) == 3
    _assert_observed_kept(ordinal_data, replicates, item_model.targets)


def test_fcs_pmm_draws_observed_values(ordinal_data, item_model):
    replicates = FCSImputation(n_iter=2).impute(ordinal_data, item_model, n_imputations=2, rng=default_rng(2))
    for rep in replicates:
        assert set(np.unique(rep[item_model.targets].to_numpy())) <= {1.0, 2.0, 3.0, 4.0, 5.0}


def test_fcs_replicates_differ(ordinal_data, item_model):
    replicates = FCSImputation(n_iter=2).impute(ordinal_data, item_model, n_imputations=2, rng=default_rng(3))
    assert not replicates[0].equals(replicates[1]), "Independent chains should give different draws"


def test_fcs_is_reproducible(ordinal_data, item_model):
    a = FCSImputation(n_iter=2).impute(ordinal_data, item_model, n_imputations=2, rng=default_rng(4))
    b = FCSImputation(n_iter=2).impute(ordinal_data, item_model, n_imputations=2, rng=default_rng(4))
    for rep_a, rep_b in zip(a, b):
        pd.testing.assert_frame_equal(rep_a, rep_b)


def test_fcs_regress_rule_gives_continuous_values(ordinal_data):
    model = ImputationModel(targets=['i1', 'i2'], auxiliaries=['x', 'z'], rules={'i1': REGRESS})
    rep = FCSImputation(n_iter=2).impute(ordinal_data, model, n_imputations=1, rng=default_rng(5))[0]
    filled = rep.loc[ordinal_data['i1'].isna(), 'i1']
    assert not np.allclose(filled, np.round(filled)), "Regression draws are not restricted to categories"


def test_mvn_keeps_observed_and_fills_gaps(ordinal_data, item_model):
    mvn = MVNImputation(burn_in=20, between=5)
    replicates = mvn.impute(ordinal_data, item_model, n_imputations=3, rng=default_rng(6))
    assert len(replicates) == 3
    _assert_observed_kept(ordinal_data, replicates, item_model.targets)
    assert not replicates[0].equals(replicates[1])


def test_no_missing_values_returns_copies(ordinal_data, item_model):
    complete = ordinal_data.fillna(3.0)
    for method in (FCSImputation(n_iter=1), MVNImputation(burn_in=1, between=1)):
        replicates = method.impute(complete, item_model, n_imputations=2, rng=default_rng(0))
        assert len(replicates) == 2
        pd.testing.assert_frame_equal(replicates[0], complete)


def test_incomplete_auxiliary_fails(ordinal_data):
    model = ImputationModel(targets=['i1'], auxiliaries=['i2'])
    with pytest.raises(ImputationModelFailure, match="Auxiliary variables must be complete"):
        FCSImputation().impute(ordinal_data, model, rng=default_rng(0))


def test_all_missing_target_fails(ordinal_data, item_model):
    data = ordinal_data.copy()
    data['i1'] = np.nan
    with pytest.raises(ImputationModelFailure, match="No observed values"):
        MVNImputation().impute(data, item_model, rng=default_rng(0))


def test_unknown_column_raises(ordinal_data):
    model = ImputationModel(targets=['nope'], auxiliaries=['x'])
    with pytest.raises(ValueError, match="unknown columns"):
        FCSImputation().impute(ordinal_data, model)


def test_too_few_observed_values_fails(ordinal_data, item_model):
    data = ordinal_data.copy()
    data['i1'] = np.nan
    data.loc[data.index[:3], 'i1'] = 2.0
    with pytest.raises(ImputationModelFailure, match="Too few observed values"):
        FCSImputation(n_iter=1).impute(data, item_model, rng=default_rng(0))


def test_em_non_convergence_fails(ordinal_data, item_model):
    with pytest.raises(ImputationModelFailure, match="EM did not converge"):
        MVNImputation(em_max_iter=1, em_tol=0.0).impute(ordinal_data, item_model, rng=default_rng(0))


def test_get_imputation_method():
    assert get_imputation_method('mvn').name == 'mvn'
    fcs = get_imputation_method('fcs', n_iter=3, donors=2)
    assert (fcs.name, fcs.n_iter, fcs.donors) == ('fcs', 3, 2)
    with pytest.raises(ValueError):
        get_imputation_method('cc')
