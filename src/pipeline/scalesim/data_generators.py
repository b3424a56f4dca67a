"""Data generation for simulation studies: correlated latent draws and
discretisation into ordinal questionnaire items."""

import logging

import numpy as np
import pandas as pd
from numpy.random import default_rng
from scipy.stats import norm

from src.pipeline.scalesim.exceptions import InvalidCovariance
from src.pipeline.scalesim.layout import ID_COLUMN, N_ITEMS, all_item_columns

logger = logging.getLogger(__name__)

# Standard-normal quantiles at cumulative probabilities .4, .7, .9, .97
CUT_PROBABILITIES = (0.4, 0.7, 0.9, 0.97)
CUT_POINTS = norm.ppf(CUT_PROBABILITIES)

PSD_TOLERANCE = 1e-8


def check_correlation(correlation):
    """Raise InvalidCovariance unless `correlation` is a valid correlation matrix."""
    corr = np.asarray(correlation, dtype=float)
    if corr.ndim != 2 or corr.shape[0] != corr.shape[1]:
        raise InvalidCovariance(f"Correlation matrix must be square. Got shape {corr.shape}.")
    if not np.all(np.isfinite(corr)):
        raise InvalidCovariance("Correlation matrix has non-finite entries")
    if not np.allclose(corr, corr.T, atol=1e-10):
        raise InvalidCovariance("Correlation matrix is not symmetric")
    if not np.allclose(np.diag(corr), 1.0):
        raise InvalidCovariance("Correlation matrix must have a unit diagonal")
    min_eig = np.linalg.eigvalsh(corr).min()
    if min_eig < -PSD_TOLERANCE:
        raise InvalidCovariance(f"Correlation matrix is not positive semi-definite (smallest eigenvalue {min_eig:.3g})")
    return corr


def sample_latent(reference, n=1000, rng=None):
    """
    Draw `n` rows of jointly normal latent values.

    Parameters:
    - reference: ReferenceParameters (mean/sd vectors and correlation)
    - n: Sample size
    - rng: numpy Generator

    Returns:
    - latent: array of shape (n, 92)
    """
    if rng is None:
        rng = default_rng(123)
    corr = check_correlation(reference.correlation)
    sd = reference.sd_vector()
    cov = corr * np.outer(sd, sd)
    # eigh tolerates semi-definite matrices where a Cholesky factor would not exist
    return rng.multivariate_normal(reference.mean_vector(), cov, size=n, method='eigh')


def discretize(values, cut_points=CUT_POINTS):
    """Map continuous values to ordinal categories 1..5 (right-open bins)."""
    return np.digitize(values, cut_points, right=False) + 1


def generate_data(reference, n=1000, rng=None):
    """
    Generate one complete synthetic cohort.

    Parameters:
    - reference: ReferenceParameters
    - n: Sample size
    - rng: numpy Generator

    Returns:
    - data: DataFrame with id, 90 ordinal items (wave order) and covariates x, z
    """
    latent = sample_latent(reference, n=n, rng=rng)
    items = discretize(latent[:, :N_ITEMS])
    data = pd.DataFrame(items.astype(float), columns=all_item_columns())
    data.insert(0, ID_COLUMN, np.arange(1, n + 1))
    data['x'] = latent[:, N_ITEMS]
    data['z'] = latent[:, N_ITEMS + 1]
    logger.debug(f"Generated {n} subjects with {N_ITEMS} items")
    return data
