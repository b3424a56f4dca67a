"""Missingness scenarios for simulation studies.

Each scenario is a two-stage logistic mechanism driven by the covariates x
and z: first a whole wave may be missing for a subject (case level), then
single items of a responding wave may be missing (item level).
"""

import logging
from dataclasses import dataclass

from numpy.random import default_rng
from scipy.special import expit

from src.pipeline.scalesim.layout import WAVES, item_columns

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MissingnessScenario:
    """Two-stage logistic missingness mechanism.

    logit p_case = case_intercept + case_slope * (x_scale + z_scale)
    logit p_item = item_intercept + item_slope * (x_scale + z_scale)
    """
    code: int
    name: str
    case_intercept: float
    case_slope: float
    item_intercept: float
    item_slope: float

    @staticmethod
    def scaled_covariates(data):
        # Divide by the sample sd only; the covariates are not centred
        x_scale = data['x'] / data['x'].std()
        z_scale = data['z'] / data['z'].std()
        return x_scale.to_numpy(), z_scale.to_numpy()

    def case_probabilities(self, data):
        x_scale, z_scale = self.scaled_covariates(data)
        return expit(self.case_intercept + self.case_slope * x_scale + self.case_slope * z_scale)

    def item_probabilities(self, data):
        x_scale, z_scale = self.scaled_covariates(data)
        return expit(self.item_intercept + self.item_slope * x_scale + self.item_slope * z_scale)

    def apply(self, data, rng=None):
        """Apply missingness to the items of every wave.

        Parameters:
        - data: complete DataFrame (id, items, x, z)
        - rng: numpy Generator

        Returns:
        - dat_miss: copy of `data` with missing items set to NaN
        """
        if rng is None:
            rng = default_rng(123)
        dat_miss = data.copy()
        p_case = self.case_probabilities(data)
        p_item = self.item_probabilities(data)
        n = len(dat_miss)
        for wave in WAVES:
            cols = item_columns(wave)
            case_missing = rng.uniform(size=n) < p_case
            item_missing = rng.uniform(size=(n, len(cols))) < p_item[:, None]
            mask = item_missing | case_missing[:, None]
            dat_miss[cols] = dat_miss[cols].mask(mask)
            logger.debug(f"{self.name}: wave {wave} case-missing {case_missing.mean():.3f}, "
                         f"items missing {mask.mean():.3f}")
        return dat_miss


BASELINE = MissingnessScenario(1, 'baseline', -2.5, 0.2, -3.5, 0.2)
INFLATED = MissingnessScenario(2, 'inflated', -1.5, 0.3, -2.5, 0.3)
EXTREME = MissingnessScenario(3, 'extreme', -3.0, -0.5, -4.0, -0.5)

SCENARIOS = {s.code: s for s in (BASELINE, INFLATED, EXTREME)}


def get_scenario(code):
    try:
        return SCENARIOS[code]
    except KeyError:
        raise ValueError(f"Unknown missingness scenario {code}. Expected one of {sorted(SCENARIOS)}.") from None
