"""Missing-data strategies for the wave-4 scale score.

Every strategy follows the same contract:

    prepare(data, rng)          -> (working frame, ImputationModel or None)
    impute(working, model, ...) -> list of completed replicates
    recompute_score(replicates) -> replicates carrying the final `score4`

`run` chains the three steps. Strategy 0 (complete case) performs no
imputation and returns the single incomplete dataset.
"""

import logging
from abc import ABC, abstractmethod

import numpy as np
import pandas as pd
from numpy.random import default_rng
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from src.pipeline.scalesim.exceptions import ImputationModelFailure
from src.pipeline.scalesim.imputation_methods import (
    ConditionalModel, FCSImputation, ImputationModel, REGRESS
)
from src.pipeline.scalesim.layout import (
    COVARIATES, ID_COLUMN, WAVES, all_item_columns, item_columns, label_wave,
    relabel_items, score_column
)
from src.pipeline.scalesim.scale_scores import add_scale_scores, scale_score

logger = logging.getLogger(__name__)

OUTCOME = score_column(4)


class Strategy(ABC):
    """Abstract base class for missing-data strategies.

    Parameters:
    - rule: completeness rule for auxiliary scale scores (0, 1 or 2)
    - mapping: reverse-score mapping (None = default)
    - n_components: principal components kept by strategy 5
    - fcs_iterations, pmm_donors: settings of chained-equation passes run by
      the strategy itself (strategy 5 auxiliary pass)
    """
    code = None
    uses_imputation = True

    def __init__(self, rule=1, mapping=None, n_components=7, fcs_iterations=10, pmm_donors=5):
        self.rule = rule
        self.mapping = mapping
        self.n_components = n_components
        self.fcs_iterations = fcs_iterations
        self.pmm_donors = pmm_donors

    @abstractmethod
    def prepare(self, data, rng=None):
        pass

    def impute(self, working, model, method, n_imputations=40, rng=None):
        return method.impute(working, model, n_imputations=n_imputations, rng=rng)

    def recompute_score(self, replicates):
        """Score wave 4 from the completed items; every item is present after imputation."""
        out = []
        for rep in replicates:
            rep = rep.copy()
            rep[OUTCOME] = scale_score(rep[item_columns(4)].to_numpy(dtype=float), 4, rule=1, mapping=self.mapping)
            out.append(rep)
        return out

    def run(self, data, method=None, n_imputations=40, rng=None):
        if rng is None:
            rng = default_rng(123)
        prepare_rng, impute_rng = rng.spawn(2)
        working, model = self.prepare(data, rng=prepare_rng)
        replicates = self.impute(working, model, method, n_imputations=n_imputations, rng=impute_rng)
        if not replicates:
            raise ImputationModelFailure(f"{self.name} produced no completed datasets")
        return self.recompute_score(replicates)

    @property
    @abstractmethod
    def name(self):
        pass


class CompleteCase(Strategy):
    code = 0
    uses_imputation = False

    def prepare(self, data, rng=None):
        # Rule 0 has no auxiliary scores; the outcome then needs every item
        rule = self.rule or 1
        working = add_scale_scores(data, waves=(4,), rule=rule, mapping=self.mapping)
        return working[[ID_COLUMN, OUTCOME] + COVARIATES], None

    def impute(self, working, model, method=None, n_imputations=1, rng=None):
        return [working]

    def recompute_score(self, replicates):
        return replicates

    @property
    def name(self):
        return 'complete_case'


class ItemImputation(Strategy):
    """All 90 items imputed with x and z as auxiliaries."""
    code = 1

    def prepare(self, data, rng=None):
        items = all_item_columns()
        working = data[[ID_COLUMN] + items + COVARIATES].copy()
        return working, ImputationModel(targets=items, auxiliaries=list(COVARIATES))

    @property
    def name(self):
        return 'items'


class ScoreImputation(Strategy):
    """Scale scores at all waves imputed instead of items."""
    code = 2

    def prepare(self, data, rng=None):
        scored = add_scale_scores(data, waves=WAVES, rule=self.rule, mapping=self.mapping)
        scores = [score_column(w) for w in WAVES]
        working = scored[[ID_COLUMN] + scores + COVARIATES].copy()
        model = ImputationModel(targets=scores, auxiliaries=list(COVARIATES),
                                rules={s: REGRESS for s in scores})
        return working, model

    def recompute_score(self, replicates):
        # The wave-4 score is itself the imputed variable
        return replicates

    @property
    def name(self):
        return 'scores'


class WaveFourItemImputation(Strategy):
    """Wave-4 items imputed with the wave 1-3 scores as auxiliaries."""
    code = 3

    def prepare(self, data, rng=None):
        earlier = (1, 2, 3)
        scored = add_scale_scores(data, waves=earlier, rule=self.rule, mapping=self.mapping)
        scores = [score_column(w) for w in earlier]
        items = item_columns(4)
        working = scored[[ID_COLUMN] + items + scores + COVARIATES].copy()
        model = ImputationModel(targets=items + scores, auxiliaries=list(COVARIATES),
                                rules={s: REGRESS for s in scores})
        return working, model

    @property
    def name(self):
        return 'wave4_items_scores'


class ItemByItemImputation(Strategy):
    """Item-by-item chained equations with scale scores as predictors.

    Items are relabelled by question identity. Each item is predicted by the
    items of the other waves, the four scale scores and x, z; items of its own
    wave are left out so the item and its wave score are not collinear.
    The wave-4 score drawn by the model is replaced by the score of the
    completed wave-4 items.
    """
    code = 4

    def prepare(self, data, rng=None):
        scored = add_scale_scores(data, waves=WAVES, rule=self.rule, mapping=self.mapping)
        relabel = relabel_items(all_item_columns())
        working = scored.rename(columns=relabel)
        items = list(relabel.values())
        scores = [score_column(w) for w in WAVES]
        working = working[[ID_COLUMN] + items + scores + COVARIATES].copy()
        return working, ImputationModel(targets=items + scores, auxiliaries=list(COVARIATES),
                                        conditionals=self.conditional_models(items, scores))

    @staticmethod
    def conditional_models(items, scores):
        models = []
        for item in items:
            wave = label_wave(item)
            cross_wave = tuple(c for c in items if label_wave(c) != wave)
            models.append(ConditionalModel(item, cross_wave + tuple(scores) + tuple(COVARIATES)))
        for score in scores:
            others = tuple(s for s in scores if s != score)
            models.append(ConditionalModel(score, others + tuple(COVARIATES), REGRESS))
        return models

    def recompute_score(self, replicates):
        restore = {new: old for old, new in relabel_items(all_item_columns()).items()}
        out = []
        for rep in replicates:
            rep = rep.rename(columns=restore)
            rep[OUTCOME + '_model'] = rep[OUTCOME]
            out.append(rep)
        return super().recompute_score(out)

    @property
    def name(self):
        return 'item_by_item'


class PrincipalComponentImputation(Strategy):
    """Wave-4 items imputed with principal components of waves 1-3 as auxiliaries."""
    code = 5

    def component_scores(self, data, rng=None):
        """One chained-equations pass over all items, then PCA of the completed
        wave 1-3 items. Returns a DataFrame indexed by subject id."""
        items = all_item_columns()
        model = ImputationModel(targets=items, auxiliaries=list(COVARIATES))
        fcs = FCSImputation(n_iter=self.fcs_iterations, donors=self.pmm_donors)
        first = fcs.impute(data[[ID_COLUMN] + items + COVARIATES], model, n_imputations=1, rng=rng)[0]
        earlier = all_item_columns(waves=(1, 2, 3))
        complete_rows = first[earlier].notna().all(axis=1)
        standardized = StandardScaler().fit_transform(first.loc[complete_rows, earlier])
        pca = PCA(n_components=self.n_components).fit(standardized)
        logger.debug(f"Leading {self.n_components} components explain "
                     f"{pca.explained_variance_ratio_.sum():.3f} of wave 1-3 item variance")
        names = [f'pc{k}' for k in range(1, self.n_components + 1)]
        components = pd.DataFrame(np.nan, index=first[ID_COLUMN], columns=names)
        components.loc[first.loc[complete_rows, ID_COLUMN].to_numpy()] = pca.transform(standardized)
        return components

    @staticmethod
    def backfill(components):
        """Fill undefined component scores from the adjacent subject row."""
        n_missing = int(components.isna().any(axis=1).sum())
        if n_missing:
            logger.warning(f"Back-filling component scores for {n_missing} subjects")
            components = components.sort_index().ffill().bfill()
        return components

    def prepare(self, data, rng=None):
        components = self.backfill(self.component_scores(data, rng=rng))
        names = list(components.columns)
        items = item_columns(4)
        # The once-imputed items are discarded; only the components are carried over
        working = data[[ID_COLUMN] + items + COVARIATES].join(components, on=ID_COLUMN)
        return working, ImputationModel(targets=items, auxiliaries=names + list(COVARIATES))

    @property
    def name(self):
        return 'principal_components'


STRATEGIES = {cls.code: cls for cls in (
    CompleteCase, ItemImputation, ScoreImputation, WaveFourItemImputation,
    ItemByItemImputation, PrincipalComponentImputation
)}


def get_strategy(code, **kwargs):
    if code not in STRATEGIES:
        raise ValueError(f"Unknown strategy {code}. Expected one of {sorted(STRATEGIES)}.")
    return STRATEGIES[code](**kwargs)
