"""Target estimators and multiple-imputation pooling.

Three estimators are run on the wave-4 scale score: the slope of the
regression on x, the mean and the median. Under complete-case analysis they
are run once; under multiple imputation they are run on every replicate and
combined with Rubin's rules.
"""

import logging
from dataclasses import dataclass

import numpy as np
import statsmodels.api as sm
from scipy import stats

from src.pipeline.scalesim.exceptions import EstimationFailure

logger = logging.getLogger(__name__)

OUTCOME = 'score4'
COVARIATE = 'x'


@dataclass(frozen=True)
class Estimate:
    """Complete-data estimate: point estimate, sampling variance and residual df."""
    estimate: float
    variance: float
    df: float

    @property
    def se(self):
        return float(np.sqrt(self.variance))


@dataclass(frozen=True)
class PooledEstimate:
    estimate: float
    se: float
    lower: float
    upper: float
    df: float
    within: float
    between: float
    total: float
    fmi: float
    n_imputations: int


# ============================================================================
# NUMERICAL STABILITY FUNCTIONS
# ============================================================================

def stable_variance(values, ddof=0):
    """
    Compute variance with numerical stability using two-pass algorithm.

    Parameters:
    -----------
    values : array-like
        Array of values
    ddof : int
        Delta degrees of freedom (0 for population variance, 1 for sample)

    Returns:
    --------
    float : Variance value
    """
    if len(values) <= ddof or len(values) < 2:
        return 0.0

    values = np.asarray(values, dtype=np.float64)
    mean_val = np.mean(values)
    # Two-pass algorithm for numerical stability
    variance = np.sum((values - mean_val) ** 2) / (len(values) - ddof)
    return float(variance)


def _critical_value(df, alpha):
    if np.isfinite(df):
        return stats.t.ppf(1 - alpha / 2, df)
    return stats.norm.ppf(1 - alpha / 2)


def _checked(estimate, name):
    if not (np.isfinite(estimate.estimate) and np.isfinite(estimate.variance)):
        raise EstimationFailure(f"{name} estimator returned non-finite results")
    return estimate


# ============================================================================
# TARGET ESTIMATORS
# ============================================================================

def estimate_regression(data, outcome=OUTCOME, covariate=COVARIATE):
    """OLS slope of `outcome` on `covariate`; rows with a missing outcome are dropped."""
    frame = data[[outcome, covariate]].dropna()
    if len(frame) < 3:
        raise EstimationFailure(f"Regression needs at least 3 complete rows. Got {len(frame)}.")
    exog = sm.add_constant(frame[covariate].to_numpy(dtype=float), has_constant='add')
    fit = sm.OLS(frame[outcome].to_numpy(dtype=float), exog).fit()
    return _checked(Estimate(float(fit.params[1]), float(fit.bse[1]) ** 2, float(fit.df_resid)), 'regression')


def estimate_mean(data, outcome=OUTCOME):
    y = data[outcome].dropna().to_numpy(dtype=float)
    if len(y) < 2:
        raise EstimationFailure(f"Mean needs at least 2 observed values. Got {len(y)}.")
    fit = sm.OLS(y, np.ones((len(y), 1))).fit()
    return _checked(Estimate(float(fit.params[0]), float(fit.bse[0]) ** 2, float(fit.df_resid)), 'mean')


def estimate_median(data, outcome=OUTCOME):
    """Median as an intercept-only quantile regression at q = 0.5."""
    y = data[outcome].dropna().to_numpy(dtype=float)
    if len(y) < 2:
        raise EstimationFailure(f"Median needs at least 2 observed values. Got {len(y)}.")
    fit = sm.QuantReg(y, np.ones((len(y), 1))).fit(q=0.5)
    return _checked(Estimate(float(fit.params[0]), float(fit.bse[0]) ** 2, float(fit.df_resid)), 'median')


ESTIMATORS = {
    'reg': estimate_regression,
    'mean': estimate_mean,
    'median': estimate_median,
}


# ============================================================================
# INFERENCE AND POOLING
# ============================================================================

def single_estimate(estimate, alpha=0.05):
    """Inference from one complete-data estimate (t reference, residual df)."""
    half = _critical_value(estimate.df, alpha) * estimate.se
    return PooledEstimate(
        estimate=estimate.estimate, se=estimate.se,
        lower=estimate.estimate - half, upper=estimate.estimate + half,
        df=estimate.df, within=estimate.variance, between=0.0, total=estimate.variance,
        fmi=0.0, n_imputations=1,
    )


def rubin_df(n_imputations, between, total):
    """Rubin's degrees of freedom (M - 1) / lambda^2, lambda = (1 + 1/M) B / T."""
    if n_imputations < 2 or between <= 0 or total <= 0:
        return np.inf
    lam = (1 + 1 / n_imputations) * between / total
    return (n_imputations - 1) / lam ** 2


def pool_estimates(estimates, alpha=0.05, small_sample=False):
    """
    Combine per-replicate estimates with Rubin's rules.

    Parameters:
    -----------
    estimates : list of Estimate
        One complete-data estimate per imputed replicate
    alpha : float
        1 - confidence level
    small_sample : bool
        Use the Barnard-Rubin degrees of freedom, which also account for the
        complete-data residual df

    Returns:
    --------
    PooledEstimate
    """
    m = len(estimates)
    if m == 0:
        raise EstimationFailure("No estimates to pool")
    if m == 1:
        return single_estimate(estimates[0], alpha)

    q = np.array([e.estimate for e in estimates], dtype=float)
    u = np.array([e.variance for e in estimates], dtype=float)
    q_bar = float(q.mean())
    within = float(u.mean())
    between = stable_variance(q, ddof=1)
    total = within + (1 + 1 / m) * between

    df = rubin_df(m, between, total)
    lam = (1 + 1 / m) * between / total if total > 0 else 0.0
    if small_sample:
        df_complete = min(e.df for e in estimates)
        df_observed = (df_complete + 1) / (df_complete + 3) * df_complete * (1 - lam)
        df = df_observed if not np.isfinite(df) else 1 / (1 / df + 1 / df_observed)

    riv = (1 + 1 / m) * between / within if within > 0 else np.inf
    if np.isfinite(riv):
        fmi = (riv + 2 / (df + 3)) / (riv + 1) if np.isfinite(df) else riv / (riv + 1)
    else:
        fmi = 1.0

    se = float(np.sqrt(total))
    half = _critical_value(df, alpha) * se
    return PooledEstimate(
        estimate=q_bar, se=se, lower=q_bar - half, upper=q_bar + half,
        df=float(df), within=within, between=between, total=total,
        fmi=float(fmi), n_imputations=m,
    )


def evaluate_replicates(replicates, imputed=True, alpha=0.05, small_sample=False):
    """
    Run every target estimator and combine across replicates.

    Args:
        replicates (list): completed DataFrames (or the single complete-case frame)
        imputed (bool): pool with Rubin's rules; False runs the estimators once
        alpha (float): 1 - confidence level
        small_sample (bool): Barnard-Rubin degrees of freedom

    Returns:
        dict: estimator name -> PooledEstimate
    """
    if not replicates:
        raise EstimationFailure("No datasets to evaluate")
    sizes = {len(rep) for rep in replicates}
    if len(sizes) > 1:
        logger.warning(f"Replicates differ in size: {sorted(sizes)}")

    results = {}
    for name, estimator in ESTIMATORS.items():
        if imputed:
            results[name] = pool_estimates([estimator(rep) for rep in replicates], alpha, small_sample)
        else:
            results[name] = single_estimate(estimator(replicates[0]), alpha)
    return results
