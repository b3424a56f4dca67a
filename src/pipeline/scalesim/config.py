"""Run configuration and reference-derived sampling parameters.

Both objects are immutable and scoped to one run; they are passed explicitly
into the sampler, the missingness injector and the strategies.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import numpy as np
import pandas as pd
from numpy.random import SeedSequence, default_rng

from src.pipeline.scalesim.layout import (
    WAVES, N_ITEMS, N_LATENT, all_item_columns, question_codes
)

logger = logging.getLogger(__name__)

SCENARIOS = (1, 2, 3)
STRATEGIES = (0, 1, 2, 3, 4, 5)
METHODS = ('cc', 'mvn', 'fcs')
RULES = (0, 1, 2)

# Random stream identifiers, see `make_rng`
STREAM_SAMPLE = 0
STREAM_MISSINGNESS = 1
STREAM_IMPUTATION = 2


@dataclass(frozen=True, eq=False)
class ReferenceParameters:
    """Mean/sd/correlation inputs of the correlated-data sampler.

    `correlation` covers the 90 items followed by the anchors x and z.
    """
    correlation: np.ndarray
    x_mean: float
    z_mean: float
    x_sd: float
    z_sd: float

    def __post_init__(self):
        corr = np.asarray(self.correlation, dtype=float)
        if corr.shape != (N_LATENT, N_LATENT):
            raise ValueError(f"correlation must be {N_LATENT}x{N_LATENT}. Got {corr.shape}.")
        if self.x_sd <= 0 or self.z_sd <= 0:
            raise ValueError(f"Anchor standard deviations must be positive. Got x_sd={self.x_sd}, z_sd={self.z_sd}.")
        corr = corr.copy()
        corr.setflags(write=False)
        object.__setattr__(self, 'correlation', corr)

    def mean_vector(self):
        return np.concatenate([np.zeros(N_ITEMS), [self.x_mean, self.z_mean]])

    def sd_vector(self):
        return np.concatenate([np.ones(N_ITEMS), [self.x_sd, self.z_sd]])

    @classmethod
    def from_reference_data(cls, frame, item_columns=None, x_column='x', z_column='z'):
        """Derive sampler parameters from real multi-wave item responses.

        Parameters:
        - frame: DataFrame with 90 item columns and the two anchor variables
        - item_columns: item columns in wave order (defaults to the standard layout)
        - x_column, z_column: anchor variable names

        Returns:
        - ReferenceParameters
        """
        if item_columns is None:
            item_columns = all_item_columns()
        if len(item_columns) != N_ITEMS:
            raise ValueError(f"Expected {N_ITEMS} item columns. Got {len(item_columns)}.")
        missing = [c for c in list(item_columns) + [x_column, z_column] if c not in frame.columns]
        if missing:
            raise ValueError(f"Reference data is missing columns: {missing}")
        # Pairwise-complete correlations, as the reference data has gaps too
        corr = frame[list(item_columns) + [x_column, z_column]].corr().to_numpy()
        if np.isnan(corr).any():
            raise ValueError("Reference data correlation has undefined entries")
        logger.info(f"Derived reference parameters from {len(frame)} reference rows")
        return cls(
            correlation=corr,
            x_mean=float(frame[x_column].mean()),
            z_mean=float(frame[z_column].mean()),
            x_sd=float(frame[x_column].std()),
            z_sd=float(frame[z_column].std()),
        )


def synthetic_reference_parameters(wave_rho=0.7, wave_loading=0.6, question_loading=0.3,
                                   x_mean=2.0, z_mean=1.5, x_sd=1.0, z_sd=1.0):
    """
    Build a positive-definite reference correlation from a wave-factor model.

    Items load on their wave's factor (wave factors follow an AR(1) pattern
    over time) and on a question-specific factor shared by the same question
    at every wave. The anchors x and z load on every wave factor and on a
    common anchor factor.

    Parameters:
    - wave_rho: lag-1 correlation of the wave factors
    - wave_loading: item loading on its wave factor
    - question_loading: item loading on its question factor
    - x_mean, z_mean, x_sd, z_sd: anchor moments

    Returns:
    - ReferenceParameters
    """
    n_waves = len(WAVES)
    n_questions = 23
    n_factors = n_waves + n_questions + 1
    anchor_factor = n_factors - 1

    loadings = np.zeros((N_LATENT, n_factors))
    row = 0
    for w_idx, wave in enumerate(WAVES):
        for code in question_codes(wave):
            loadings[row, w_idx] = wave_loading
            loadings[row, n_waves + code - 1] = question_loading
            row += 1
    loadings[N_ITEMS, :n_waves] = 0.25
    loadings[N_ITEMS, anchor_factor] = 0.3
    loadings[N_ITEMS + 1, :n_waves] = 0.15
    loadings[N_ITEMS + 1, anchor_factor] = 0.3

    lags = np.abs(np.subtract.outer(np.arange(n_waves), np.arange(n_waves)))
    phi = np.eye(n_factors)
    phi[:n_waves, :n_waves] = wave_rho ** lags

    common = loadings @ phi @ loadings.T
    if np.any(np.diag(common) >= 1):
        raise ValueError("Factor loadings leave no unique variance; lower the loadings")
    corr = common.copy()
    np.fill_diagonal(corr, 1.0)
    return ReferenceParameters(correlation=corr, x_mean=x_mean, z_mean=z_mean, x_sd=x_sd, z_sd=z_sd)


@dataclass(frozen=True)
class SimulationConfig:
    """Validated configuration of one run (one scenario/strategy/method/rule
    combination over a range of dataset indices)."""
    scenario: int = 1
    strategy: int = 0
    method: str = 'cc'
    rule: int = 0
    simno_start: int = 1
    simno_end: int = 1
    seed: int = 1
    n: int = 1000
    n_imputations: int = 40
    fcs_iterations: int = 10
    pmm_donors: int = 5
    n_components: int = 7
    output_dir: str = 'results'
    processes: int = 1
    save_datasets: bool = False
    reference_data: str = None
    extra: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if self.scenario not in SCENARIOS:
            raise ValueError(f"scenario must be one of {SCENARIOS}. Got {self.scenario}.")
        if self.strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}. Got {self.strategy}.")
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}. Got {self.method!r}.")
        if self.rule not in RULES:
            raise ValueError(f"rule must be one of {RULES}. Got {self.rule}.")
        if (self.method == 'cc') != (self.strategy == 0):
            raise ValueError(f"method 'cc' is used with strategy 0 only. Got strategy={self.strategy}, method={self.method!r}.")
        if self.strategy in (2, 3, 4) and self.rule == 0:
            raise ValueError(f"strategy {self.strategy} builds auxiliary scale scores and needs rule 1 or 2. Got rule=0.")
        if self.strategy == 4 and self.method != 'fcs':
            raise ValueError(f"strategy 4 imputes item by item and needs method 'fcs'. Got {self.method!r}.")
        if not (1 <= self.simno_start <= self.simno_end):
            raise ValueError(f"Invalid replicate range {self.simno_start}..{self.simno_end}.")
        if self.seed < 0:
            raise ValueError(f"seed must be non-negative. Got {self.seed}.")
        if self.n < 10:
            raise ValueError(f"n must be at least 10. Got {self.n}.")
        if self.n_imputations < 1 or self.fcs_iterations < 1 or self.pmm_donors < 1:
            raise ValueError("n_imputations, fcs_iterations and pmm_donors must be positive.")
        if self.processes < 1:
            raise ValueError(f"processes must be positive. Got {self.processes}.")

    @property
    def simnos(self):
        return range(self.simno_start, self.simno_end + 1)

    @property
    def label(self):
        """Key of the result artifact."""
        return (f'scen{self.scenario}_strat{self.strategy}_rule{self.rule}_{self.method}_'
                f'sim{self.simno_start}-{self.simno_end}')


REQUIRED_KEYS = ['scenario', 'strategy', 'method', 'rule', 'simno_start', 'simno_end', 'seed']


def load_config(config_path):
    """
    Load a run configuration from a JSON file.

    Parameters:
    -----------
    config_path : str or Path
        Path to the JSON configuration file

    Returns:
    --------
    SimulationConfig

    Example JSON structure:
    {
        "scenario": 1,
        "strategy": 3,
        "method": "fcs",
        "rule": 2,
        "simno_start": 1,
        "simno_end": 50,
        "seed": 1
    }
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw = json.load(f)

    missing_keys = [key for key in REQUIRED_KEYS if key not in raw]
    if missing_keys:
        raise ValueError(f"Missing required configuration keys: {missing_keys}")

    known = {f.name for f in fields(SimulationConfig)} - {'extra'}
    unknown = {k: v for k, v in raw.items() if k not in known}
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")
    config = SimulationConfig(**{k: v for k, v in raw.items() if k in known}, extra=unknown)

    logger.info(f"Loaded configuration from {config_path}")
    return config


def load_reference_parameters(config):
    """Reference parameters for a run: from the configured CSV, else synthetic."""
    if config.reference_data:
        frame = pd.read_csv(config.reference_data)
        return ReferenceParameters.from_reference_data(frame)
    return synthetic_reference_parameters()


def make_rng(seed, simno, stream, *key):
    """Generator for one random stream of one dataset.

    Draws depend only on (seed, simno, stream, key), never on which worker
    runs the dataset or in what order.
    """
    return default_rng(SeedSequence(seed, spawn_key=(simno, stream) + tuple(key)))


def method_code(method):
    return METHODS.index(method)
