"""Per-replication result rows and their result file."""

import logging
import os
from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from src.pipeline.scalesim.evaluator import ESTIMATORS
from src.pipeline.scalesim.exceptions import RC_OK

logger = logging.getLogger(__name__)

STAT_SUFFIXES = ('b', 'se', 'lb', 'ub')
RESULT_COLUMNS = ['simno', 'rc'] + [f'{name}_{s}' for name in ESTIMATORS for s in STAT_SUFFIXES]


@dataclass(frozen=True)
class EstimateRecord:
    simno: int
    rc: int
    reg_b: float = np.nan
    reg_se: float = np.nan
    reg_lb: float = np.nan
    reg_ub: float = np.nan
    mean_b: float = np.nan
    mean_se: float = np.nan
    mean_lb: float = np.nan
    mean_ub: float = np.nan
    median_b: float = np.nan
    median_se: float = np.nan
    median_lb: float = np.nan
    median_ub: float = np.nan

    @classmethod
    def from_results(cls, simno, results):
        """Build a successful record from {estimator: PooledEstimate}."""
        values = {}
        for name, pooled in results.items():
            values.update({
                f'{name}_b': pooled.estimate, f'{name}_se': pooled.se,
                f'{name}_lb': pooled.lower, f'{name}_ub': pooled.upper,
            })
        return cls(simno=simno, rc=RC_OK, **values)

    @classmethod
    def failed(cls, simno, rc):
        return cls(simno=simno, rc=rc)


class ResultRecorder:
    """Accumulates one EstimateRecord per replication and appends them to the
    run's result file."""

    def __init__(self, config):
        self.config = config
        self.records = []

    def append(self, record):
        self.records.append(record)

    def extend(self, records):
        for record in records:
            self.append(record)

    def __len__(self):
        return len(self.records)

    @property
    def default_path(self):
        return os.path.join(self.config.output_dir, f'results_{self.config.label}.csv')

    def to_frame(self):
        frame = pd.DataFrame([asdict(r) for r in self.records], columns=RESULT_COLUMNS)
        for key in ('scenario', 'strategy', 'rule', 'method'):
            frame[key] = getattr(self.config, key)
        return frame

    def save(self, path=None):
        """Append the recorded rows to `path`; the header is written only for a new file."""
        path = path or self.default_path
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        write_header = not os.path.exists(path) or os.path.getsize(path) == 0
        self.to_frame().to_csv(path, mode='a', header=write_header, index=False)
        n_failed = sum(r.rc != RC_OK for r in self.records)
        logger.info(f"Saved {len(self.records)} result rows ({n_failed} failed) to {path}")
        return path
