"""Wave-level composite scores computed from questionnaire items."""

import logging

import numpy as np
from scipy.interpolate import interp1d

from src.pipeline.scalesim.layout import MISSING_THRESHOLD, WAVES, item_columns, score_column

logger = logging.getLogger(__name__)

# Category 1 is the best response and scores 100
REVERSE_SCORES = {1: 100.0, 2: 75.0, 3: 50.0, 4: 25.0, 5: 0.0}


def reverse_score(values, mapping=None):
    """
    Reverse-score item responses.

    Integer categories map exactly through `mapping`; non-integer values
    (imputed under a normal model) are interpolated, and extrapolated beyond
    the outer categories, along the same mapping. NaN stays NaN.
    """
    if mapping is None:
        mapping = REVERSE_SCORES
    categories = sorted(mapping)
    scorer = interp1d(categories, [mapping[c] for c in categories],
                      kind='linear', fill_value='extrapolate', assume_sorted=True)
    values = np.asarray(values, dtype=float)
    return scorer(values)


def scale_score(items, wave, rule=1, mapping=None):
    """
    Compute one wave's scale score for every subject.

    Parameters:
    - items: DataFrame or array with the wave's item responses (NaN = missing)
    - wave: wave number, selects the rule-2 missing-item threshold
    - rule: 1 (or 0) = all items required; 2 = at most MISSING_THRESHOLD[wave] missing
    - mapping: reverse-score mapping (defaults to REVERSE_SCORES)

    Returns:
    - scores: array of length n, NaN where the score is undefined
    """
    if rule not in (0, 1, 2):
        raise ValueError(f"rule must be 0, 1 or 2. Got {rule}.")
    scored = reverse_score(items, mapping)
    observed = ~np.isnan(scored)
    n_missing = scored.shape[1] - observed.sum(axis=1)
    n_observed = observed.sum(axis=1)
    means = np.divide(np.nansum(scored, axis=1), n_observed,
                      out=np.full(len(scored), np.nan), where=n_observed > 0)
    if rule == 2:
        defined = n_missing <= MISSING_THRESHOLD[wave]
    else:
        defined = n_missing == 0
    return np.where(defined, means, np.nan)


def add_scale_scores(data, waves=WAVES, rule=1, mapping=None, columns=None):
    """Return a copy of `data` with a `score{w}` column per wave.

    `columns` optionally maps a wave to its item columns when they are not
    the standard position labels.
    """
    out = data.copy()
    for wave in waves:
        cols = columns[wave] if columns is not None else item_columns(wave)
        out[score_column(wave)] = scale_score(out[cols].to_numpy(dtype=float), wave, rule, mapping)
        logger.debug(f"Wave {wave} score defined for {out[score_column(wave)].notna().mean():.3f} of subjects")
    return out
