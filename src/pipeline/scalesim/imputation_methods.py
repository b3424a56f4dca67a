"""Imputation mechanisms for simulation studies.

Two mechanisms share the `ImputationMethod` contract:

- `MVNImputation`: joint multivariate-normal model (EM start, then data
  augmentation with posterior parameter draws).
- `FCSImputation`: fully conditional specification (chained equations) with
  predictive mean matching for ordinal items and normal linear regression
  for continuous variables.

Which columns are imputed and from what is described by an `ImputationModel`.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
import statsmodels.api as sm
from numpy.random import default_rng
from scipy.stats import invwishart
from sklearn.neighbors import NearestNeighbors
from tqdm import tqdm

from src.pipeline.scalesim.exceptions import ImputationModelFailure

logger = logging.getLogger(__name__)

PMM = 'pmm'
REGRESS = 'regress'


@dataclass(frozen=True)
class ConditionalModel:
    """One step of a chained-equations cycle: impute `target` from `predictors`."""
    target: str
    predictors: tuple
    rule: str = PMM

    def __post_init__(self):
        if self.rule not in (PMM, REGRESS):
            raise ValueError(f"Unknown conditional imputation rule {self.rule!r}")
        if self.target in self.predictors:
            raise ValueError(f"{self.target} cannot predict itself")


@dataclass
class ImputationModel:
    """Variables of one imputation model.

    - targets: columns that may contain missing values and get imputed
    - auxiliaries: complete columns used as predictors only
    - rules: per-target conditional rule for FCS (default PMM)
    - conditionals: explicit FCS steps; built from targets/auxiliaries when None
    """
    targets: list
    auxiliaries: list
    rules: dict = field(default_factory=dict)
    conditionals: list = None

    @property
    def columns(self):
        return list(self.targets) + list(self.auxiliaries)

    def conditional_models(self):
        if self.conditionals is not None:
            return list(self.conditionals)
        return default_conditional_models(self.targets, self.auxiliaries, self.rules)


def default_conditional_models(targets, auxiliaries, rules=None):
    """Every target is predicted by all other targets and the auxiliaries."""
    rules = rules or {}
    models = []
    for target in targets:
        predictors = tuple(c for c in targets if c != target) + tuple(auxiliaries)
        models.append(ConditionalModel(target, predictors, rules.get(target, PMM)))
    return models


def _check_inputs(data, model):
    missing_cols = [c for c in model.columns if c not in data.columns]
    if missing_cols:
        raise ValueError(f"Imputation model refers to unknown columns: {missing_cols}")
    incomplete = [c for c in model.auxiliaries if data[c].isna().any()]
    if incomplete:
        raise ImputationModelFailure(f"Auxiliary variables must be complete: {incomplete}")
    empty = [c for c in model.targets if data[c].isna().all()]
    if empty:
        raise ImputationModelFailure(f"No observed values to impute from for: {empty}")


class ImputationMethod(ABC):
    """Abstract base class for imputation methods.

    All imputation methods must implement:
    - impute(data, model, n_imputations=1, rng=None): Return list of imputed DataFrames
    - name: Property for descriptive name
    """

    @abstractmethod
    def impute(self, data, model, n_imputations=1, rng=None):
        pass

    @property
    @abstractmethod
    def name(self):
        pass


class MVNImputation(ImputationMethod):
    def __init__(self, burn_in=100, between=10, em_max_iter=500, em_tol=1e-4):
        self.burn_in = burn_in
        self.between = between
        self.em_max_iter = em_max_iter
        self.em_tol = em_tol

    @staticmethod
    def _patterns(mask):
        """Group rows by missingness pattern: [(rows, observed_idx, missing_idx)]."""
        uniq, inverse = np.unique(mask, axis=0, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)
        patterns = []
        for k, pattern in enumerate(uniq):
            if not pattern.any():
                continue
            patterns.append((np.flatnonzero(inverse == k), np.flatnonzero(~pattern), np.flatnonzero(pattern)))
        return patterns

    @staticmethod
    def _conditional(mu, sigma, obs, mis, y_obs):
        """Conditional mean rows and covariance of the missing block."""
        if len(obs) == 0:
            return np.broadcast_to(mu[mis], (len(y_obs), len(mis))), sigma[np.ix_(mis, mis)]
        s_oo = sigma[np.ix_(obs, obs)]
        s_om = sigma[np.ix_(obs, mis)]
        coef = np.linalg.solve(s_oo, s_om)  # (|o|, |m|)
        cond_mean = mu[mis] + (y_obs - mu[obs]) @ coef
        cond_cov = sigma[np.ix_(mis, mis)] - s_om.T @ coef
        return cond_mean, cond_cov

    def _em(self, y, patterns):
        """Maximum-likelihood mean and covariance with missing values."""
        n, p = y.shape
        mu = np.nanmean(y, axis=0)
        sigma = np.diag(np.nanvar(y, axis=0))
        filled = np.where(np.isnan(y), mu, y)
        for iteration in range(1, self.em_max_iter + 1):
            extra = np.zeros((p, p))
            for rows, obs, mis in patterns:
                cond_mean, cond_cov = self._conditional(mu, sigma, obs, mis, y[np.ix_(rows, obs)])
                filled[np.ix_(rows, mis)] = cond_mean
                extra[np.ix_(mis, mis)] += len(rows) * cond_cov
            mu_new = filled.mean(axis=0)
            centred = filled - mu_new
            sigma_new = (centred.T @ centred + extra) / n
            change = max(np.abs(mu_new - mu).max(), np.abs(sigma_new - sigma).max())
            mu, sigma = mu_new, sigma_new
            if change < self.em_tol:
                logger.debug(f"EM converged after {iteration} iterations")
                return mu, sigma
        raise ImputationModelFailure(f"EM did not converge within {self.em_max_iter} iterations")

    def _i_step(self, y, patterns, mu, sigma, rng):
        completed = y.copy()
        for rows, obs, mis in patterns:
            cond_mean, cond_cov = self._conditional(mu, sigma, obs, mis, y[np.ix_(rows, obs)])
            chol = np.linalg.cholesky(cond_cov)
            completed[np.ix_(rows, mis)] = cond_mean + rng.standard_normal((len(rows), len(mis))) @ chol.T
        return completed

    @staticmethod
    def _p_step(completed, rng):
        n = len(completed)
        ybar = completed.mean(axis=0)
        centred = completed - ybar
        sigma = invwishart.rvs(df=n - 1, scale=centred.T @ centred, random_state=rng)
        sigma = np.atleast_2d(sigma)
        mu = rng.multivariate_normal(ybar, sigma / n, method='cholesky')
        return mu, sigma

    def impute(self, data, model, n_imputations=1, rng=None):
        if rng is None:
            rng = default_rng(123)
        _check_inputs(data, model)
        columns = model.columns
        raw = data[columns].to_numpy(dtype=float)
        mask = np.isnan(raw)
        if not mask.any():
            return [data.copy() for _ in range(n_imputations)]

        # Work on standardised columns so that items, scores and covariates share a scale
        centre = np.nanmean(raw, axis=0)
        scale = np.nanstd(raw, axis=0)
        scale[~(scale > 0)] = 1.0
        y = (raw - centre) / scale
        patterns = self._patterns(mask)

        dat_imputed_list = []
        try:
            mu, sigma = self._em(y, patterns)
            for i in range(n_imputations):
                steps = self.burn_in if i == 0 else self.between
                for _ in range(max(steps, 1)):
                    completed = self._i_step(y, patterns, mu, sigma, rng)
                    mu, sigma = self._p_step(completed, rng)
                if not np.all(np.isfinite(completed)):
                    raise ImputationModelFailure("Data augmentation produced non-finite values")
                dat_imputed = data.copy()
                values = completed * scale + centre
                for j, col in enumerate(model.targets):
                    dat_imputed[col] = np.where(mask[:, j], values[:, j], raw[:, j])
                dat_imputed_list.append(dat_imputed)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise ImputationModelFailure(f"Multivariate normal imputation failed: {e}") from e
        return dat_imputed_list

    @property
    def name(self):
        return 'mvn'


class FCSImputation(ImputationMethod):
    def __init__(self, n_iter=10, donors=5, show_progress=False):
        self.n_iter = n_iter
        self.donors = donors
        self.show_progress = show_progress

    @staticmethod
    def _draw_parameters(x_obs, y_obs, rng):
        """Fit OLS on observed rows and draw (beta, sigma) from their posterior."""
        fit = sm.OLS(y_obs, x_obs).fit()
        if fit.df_resid < 1 or not np.all(np.isfinite(fit.params)):
            raise ImputationModelFailure("Conditional regression could not be estimated")
        sigma2 = fit.ssr / rng.chisquare(fit.df_resid)
        beta = rng.multivariate_normal(fit.params, sigma2 * fit.normalized_cov_params, method='eigh')
        return fit.params, beta, np.sqrt(sigma2)

    def _impute_step(self, completed, observed, cm, index, rng):
        t = index[cm.target]
        pred = [index[c] for c in cm.predictors]
        obs_rows = observed[:, t]
        n_obs = int(obs_rows.sum())
        if n_obs < len(pred) + 2:
            raise ImputationModelFailure(f"Too few observed values ({n_obs}) to impute {cm.target}")
        design = np.column_stack([np.ones(len(completed)), completed[:, pred]])
        x_obs, x_mis = design[obs_rows], design[~obs_rows]
        y_obs = completed[obs_rows, t]
        beta_hat, beta_star, sigma = self._draw_parameters(x_obs, y_obs, rng)
        if cm.rule == REGRESS:
            return x_mis @ beta_star + rng.normal(0.0, sigma, size=len(x_mis))
        # Predictive mean matching: donors are the k observed cases with the closest prediction
        k = min(self.donors, n_obs)
        nn = NearestNeighbors(n_neighbors=k).fit((x_obs @ beta_hat).reshape(-1, 1))
        _, neighbours = nn.kneighbors((x_mis @ beta_star).reshape(-1, 1))
        chosen = neighbours[np.arange(len(x_mis)), rng.integers(0, k, size=len(x_mis))]
        return y_obs[chosen]

    def impute(self, data, model, n_imputations=1, rng=None):
        if rng is None:
            rng = default_rng(123)
        _check_inputs(data, model)
        columns = model.columns
        index = {c: j for j, c in enumerate(columns)}
        values = data[columns].to_numpy(dtype=float)
        observed = ~np.isnan(values)
        conditionals = [cm for cm in model.conditional_models() if not observed[:, index[cm.target]].all()]
        if not conditionals:
            return [data.copy() for _ in range(n_imputations)]

        dat_imputed_list = []
        imputation_rngs = rng.spawn(n_imputations)
        for i in tqdm(range(n_imputations), desc="FCS Imputations", leave=False, disable=not self.show_progress):
            chain_rng = imputation_rngs[i]
            completed = values.copy()
            # Start each chain from random draws of the observed values
            for cm in conditionals:
                t = index[cm.target]
                pool = values[observed[:, t], t]
                completed[~observed[:, t], t] = chain_rng.choice(pool, size=int((~observed[:, t]).sum()))
            try:
                for _ in range(self.n_iter):
                    for cm in conditionals:
                        t = index[cm.target]
                        completed[~observed[:, t], t] = self._impute_step(completed, observed, cm, index, chain_rng)
            except (np.linalg.LinAlgError, ValueError) as e:
                raise ImputationModelFailure(f"Chained-equations imputation failed: {e}") from e
            if not np.all(np.isfinite(completed)):
                raise ImputationModelFailure("Chained-equations imputation produced non-finite values")
            dat_imputed = data.copy()
            for col in model.targets:
                dat_imputed[col] = completed[:, index[col]]
            dat_imputed_list.append(dat_imputed)
        return dat_imputed_list

    @property
    def name(self):
        return 'fcs'


def get_imputation_method(method, n_iter=10, donors=5):
    if method == 'mvn':
        return MVNImputation()
    if method == 'fcs':
        return FCSImputation(n_iter=n_iter, donors=donors)
    raise ValueError(f"No imputation mechanism for method {method!r}")
