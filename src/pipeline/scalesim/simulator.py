"""Simulation study orchestration: one task per simulated dataset."""

import logging
import os
from multiprocessing import Pool

import pandas as pd
from tqdm import tqdm

from src.pipeline.scalesim.config import (
    STREAM_IMPUTATION, STREAM_MISSINGNESS, STREAM_SAMPLE, load_reference_parameters,
    make_rng, method_code
)
from src.pipeline.scalesim.data_generators import generate_data
from src.pipeline.scalesim.evaluator import evaluate_replicates
from src.pipeline.scalesim.exceptions import EstimationFailure, ImputationModelFailure
from src.pipeline.scalesim.imputation_methods import get_imputation_method
from src.pipeline.scalesim.missingness_patterns import get_scenario
from src.pipeline.scalesim.recorder import EstimateRecord, ResultRecorder
from src.pipeline.scalesim.strategies import get_strategy

logger = logging.getLogger(__name__)


class SimulationStudy:
    def __init__(self, config, reference=None):
        self.config = config
        self.reference = reference if reference is not None else load_reference_parameters(config)
        self.scenario = get_scenario(config.scenario)
        self.strategy = get_strategy(
            config.strategy, rule=config.rule, n_components=config.n_components,
            fcs_iterations=config.fcs_iterations, pmm_donors=config.pmm_donors,
        )
        self.method = None
        if self.strategy.uses_imputation:
            self.method = get_imputation_method(config.method, n_iter=config.fcs_iterations,
                                                donors=config.pmm_donors)

    def dataset_path(self, simno):
        return os.path.join(self.config.output_dir, 'datasets', f'scen{self.config.scenario}_sim{simno}.csv')

    def generate_dataset(self, simno):
        """
        Sample, discretise and apply missingness for one dataset index.

        The complete data depend on (seed, simno) only, so every scenario
        masks the same cohort.
        """
        cfg = self.config
        complete = generate_data(self.reference, n=cfg.n, rng=make_rng(cfg.seed, simno, STREAM_SAMPLE))
        return self.scenario.apply(complete, rng=make_rng(cfg.seed, simno, STREAM_MISSINGNESS, cfg.scenario))

    def save_dataset(self, simno, data):
        path = self.dataset_path(simno)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        data.to_csv(path, index=False)
        return path

    def load_dataset(self, simno):
        return pd.read_csv(self.dataset_path(simno))

    def analyze_dataset(self, simno, data):
        """
        Apply the configured strategy to one dataset and pool the estimates.

        Imputation and estimation failures are logged and turned into a failed
        record; they never propagate to sibling datasets.
        """
        cfg = self.config
        rng = make_rng(cfg.seed, simno, STREAM_IMPUTATION, cfg.scenario, cfg.strategy, cfg.rule,
                       method_code(cfg.method))
        try:
            replicates = self.strategy.run(data, self.method, n_imputations=cfg.n_imputations, rng=rng)
        except ImputationModelFailure as e:
            logger.warning(f"simno {simno}: imputation failed ({self.strategy.name}/{cfg.method}): {e}")
            return EstimateRecord.failed(simno, e.code)
        try:
            results = evaluate_replicates(replicates, imputed=self.strategy.uses_imputation)
        except EstimationFailure as e:
            logger.warning(f"simno {simno}: estimation failed: {e}")
            return EstimateRecord.failed(simno, e.code)
        return EstimateRecord.from_results(simno, results)

    def run_replication(self, simno):
        data = self.generate_dataset(simno)
        if self.config.save_datasets:
            self.save_dataset(simno, data)
        return self.analyze_dataset(simno, data)

    def run_all(self, recorder=None):
        """Run every dataset index of the configured range in this process."""
        recorder = recorder if recorder is not None else ResultRecorder(self.config)
        for simno in tqdm(self.config.simnos, desc=f"Datasets {self.config.label}"):
            recorder.append(self.run_replication(simno))
        return recorder

    def run_parallel(self, processes=None, recorder=None):
        """Run the range across a process pool, one task per dataset index."""
        processes = processes or self.config.processes
        recorder = recorder if recorder is not None else ResultRecorder(self.config)
        simnos = list(self.config.simnos)
        processes = min(processes, len(simnos))
        if processes <= 1:
            return self.run_all(recorder)
        logger.info(f"Parallelizing {len(simnos)} datasets across {processes} processes")
        with Pool(processes=processes, initializer=_init_worker, initargs=(self.config, self.reference)) as pool:
            records = list(tqdm(pool.imap(_run_worker, simnos), total=len(simnos),
                                desc=f"Datasets {self.config.label}"))
        recorder.extend(records)
        return recorder


_worker_study = None


def _init_worker(config, reference):
    global _worker_study
    _worker_study = SimulationStudy(config, reference)


def _run_worker(simno):
    return _worker_study.run_replication(simno)
