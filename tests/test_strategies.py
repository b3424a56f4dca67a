import pytest
import numpy as np
import pandas as pd
import sys
import os
import logging
from numpy.random import default_rng

# Add parent directory to path to import from src
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.pipeline.scalesim.config import synthetic_reference_parameters
from src.pipeline.scalesim.data_generators import generate_data
from src.pipeline.scalesim.imputation_methods import FCSImputation, MVNImputation
from src.pipeline.scalesim.layout import all_item_columns, item_columns, relabel_items
from src.pipeline.scalesim.missingness_patterns import BASELINE
from src.pipeline.scalesim.strategies import (
    CompleteCase, ItemByItemImputation, ItemImputation, PrincipalComponentImputation,
    ScoreImputation, WaveFourItemImputation, get_strategy
)


@pytest.fixture(scope="module")
def missing_data():
    """Small cohort with baseline missingness."""
    complete = generate_data(synthetic_reference_parameters(), n=300, rng=default_rng(99))
    return BASELINE.apply(complete, rng=default_rng(100))


@pytest.fixture(scope="module")
def fcs():
    return FCSImputation(n_iter=2, donors=5)


def _wave4_missing(data):
    return data[item_columns(4)].isna().any(axis=1).to_numpy()


def test_get_strategy():
    for code, cls in enumerate([CompleteCase, ItemImputation, ScoreImputation, WaveFourItemImputation,
                                ItemByItemImputation, PrincipalComponentImputation]):
        strategy = get_strategy(code, rule=2)
        assert isinstance(strategy, cls)
        assert strategy.code == code
    with pytest.raises(ValueError, match="Unknown strategy"):
        get_strategy(6)


# ============================================================================
# TEST 1: Complete case
# ============================================================================

def test_complete_case_returns_single_dataset(missing_data):
    replicates = CompleteCase(rule=0).run(missing_data, rng=default_rng(0))
    assert len(replicates) == 1
    working = replicates[0]
    assert list(working.columns) == ['id', 'score4', 'x', 'z']
    # Rule 0 scores the outcome like rule 1: any missing wave-4 item leaves it undefined
    np.testing.assert_array_equal(working['score4'].isna().to_numpy(), _wave4_missing(missing_data))


def test_complete_case_rule2_keeps_more_outcomes(missing_data):
    rule1 = CompleteCase(rule=1).run(missing_data, rng=default_rng(0))[0]
    rule2 = CompleteCase(rule=2).run(missing_data, rng=default_rng(0))[0]
    assert rule2['score4'].notna().sum() > rule1['score4'].notna().sum()


# ============================================================================
# TEST 2: Imputation strategies
# ============================================================================

def test_item_imputation(missing_data, fcs):
    replicates = ItemImputation().run(missing_data, fcs, n_imputations=2, rng=default_rng(1))
    assert len(replicates) == 2
    for rep in replicates:
        assert not rep[all_item_columns()].isna().any().any()
        assert rep['score4'].notna().all(), "score4 is recomputed from completed wave-4 items"
        assert rep['score4'].between(0, 100).all()


@pytest.mark.parametrize("method", [FCSImputation(n_iter=2), MVNImputation(burn_in=10, between=2)])
def test_score_imputation(missing_data, method):
    replicates = ScoreImputation(rule=2).run(missing_data, method, n_imputations=2, rng=default_rng(2))
    for rep in replicates:
        assert list(rep.columns) == ['id', 'score1', 'score2', 'score3', 'score4', 'x', 'z']
        assert rep['score4'].notna().all()


def test_score_imputation_keeps_imputed_outcome(missing_data, fcs):
    """Observed rule-1 scores survive imputation unchanged."""
    replicates = ScoreImputation(rule=1).run(missing_data, fcs, n_imputations=1, rng=default_rng(3))
    observed = ~_wave4_missing(missing_data)
    assert replicates[0]['score4'].isna().sum() == 0
    expected = ScoreImputation(rule=1).prepare(missing_data)[0]['score4']
    np.testing.assert_allclose(replicates[0]['score4'][observed], expected[observed])


@pytest.mark.parametrize("method", [FCSImputation(n_iter=2), MVNImputation(burn_in=10, between=2)])
def test_wave_four_item_imputation(missing_data, method):
    strategy = WaveFourItemImputation(rule=2)
    working, model = strategy.prepare(missing_data)
    assert model.targets == item_columns(4) + ['score1', 'score2', 'score3']
    replicates = strategy.run(missing_data, method, n_imputations=2, rng=default_rng(4))
    for rep in replicates:
        assert not rep[item_columns(4)].isna().any().any()
        assert rep['score4'].notna().all()


def test_item_by_item_relabels_without_collisions(missing_data):
    working, model = ItemByItemImputation(rule=2).prepare(missing_data)
    labels = list(relabel_items(all_item_columns()).values())
    assert len(set(labels)) == 90
    assert set(labels) <= set(working.columns)
    for cm in model.conditional_models():
        if cm.target.startswith('q'):
            wave = cm.target.rsplit('_w', 1)[1]
            assert not any(p.endswith(f'_w{wave}') for p in cm.predictors if p.startswith('q')), \
                f"{cm.target} must not be predicted by items of its own wave"
            assert {'score1', 'score2', 'score3', 'score4', 'x', 'z'} <= set(cm.predictors)


def test_item_by_item_recomputes_outcome(missing_data, fcs):
    """The model's score4 is kept aside and differs from the recomputed score."""
    replicates = ItemByItemImputation(rule=2).run(missing_data, fcs, n_imputations=2, rng=default_rng(5))
    was_missing = _wave4_missing(missing_data)
    for rep in replicates:
        assert 'score4_model' in rep.columns
        assert set(all_item_columns()) <= set(rep.columns), "Item labels are restored"
        assert rep['score4'].notna().all()
        assert not np.allclose(rep['score4'][was_missing], rep['score4_model'][was_missing])


def test_principal_component_auxiliaries(missing_data):
    strategy = PrincipalComponentImputation(n_components=7, fcs_iterations=1)
    working, model = strategy.prepare(missing_data, rng=default_rng(6))
    pcs = [f'pc{k}' for k in range(1, 8)]
    assert model.auxiliaries == pcs + ['x', 'z']
    assert model.targets == item_columns(4)
    assert working[pcs].notna().all().all()
    # The once-imputed items are discarded
    assert working[item_columns(4)].isna().sum().sum() == missing_data[item_columns(4)].isna().sum().sum()


def test_principal_component_imputation_run(missing_data, fcs):
    strategy = PrincipalComponentImputation(fcs_iterations=1)
    replicates = strategy.run(missing_data, fcs, n_imputations=2, rng=default_rng(7))
    assert len(replicates) == 2
    assert all(rep['score4'].notna().all() for rep in replicates)


def test_component_backfill(caplog):
    components = pd.DataFrame({'pc1': [1.0, np.nan, 3.0], 'pc2': [np.nan, 2.0, 4.0]}, index=[1, 2, 3])
    with caplog.at_level(logging.WARNING):
        filled = PrincipalComponentImputation.backfill(components)
    assert filled['pc1'].tolist() == [1.0, 1.0, 3.0]
    assert filled['pc2'].tolist() == [2.0, 2.0, 4.0]
    assert "Back-filling component scores for 2 subjects" in caplog.text


def test_strategy_run_is_reproducible(missing_data, fcs):
    a = WaveFourItemImputation(rule=2).run(missing_data, fcs, n_imputations=2, rng=default_rng(8))
    b = WaveFourItemImputation(rule=2).run(missing_data, fcs, n_imputations=2, rng=default_rng(8))
    for rep_a, rep_b in zip(a, b):
        pd.testing.assert_frame_equal(rep_a, rep_b)
