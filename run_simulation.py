import argparse
import logging
import os
from dataclasses import replace

from src.pipeline.scalesim.config import SimulationConfig, load_config, load_reference_parameters
from src.pipeline.scalesim.recorder import ResultRecorder
from src.pipeline.scalesim.simulator import SimulationStudy

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('simulation.log.txt'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger()


def run_simulation(config_file=None, reference=None, save=True, **overrides):
    """
    Run one scenario/strategy/method/rule combination over a range of datasets.

    Parameters can be provided either via a JSON config file or directly as
    keyword arguments. Keyword arguments override values from the file.

    Parameters:
    -----------
    config_file : str or Path, optional
        Path to JSON configuration file
    reference : ReferenceParameters, optional
        Sampler parameters; derived from the configuration when omitted
    save : bool, default=True
        Append the result rows to the run's result file
    **overrides :
        Any SimulationConfig field (scenario, strategy, method, rule,
        simno_start, simno_end, seed, n, n_imputations, processes, ...)

    Returns:
    --------
    results : DataFrame
        One row per dataset index

    Example:
    --------
    # Using JSON config file
    results = run_simulation(config_file='config.json')

    # Using direct parameters
    results = run_simulation(scenario=1, strategy=0, method='cc', rule=0, simno_start=1, simno_end=10)
    """
    if config_file is not None:
        config = load_config(config_file)
        if overrides:
            config = replace(config, **overrides)
    else:
        config = SimulationConfig(**overrides)

    if 'processes' not in overrides and config.processes == 1:
        # Use SLURM_CPUS_PER_TASK if on HPC, otherwise NUM_PROCESSES
        num_cores = int(os.environ.get('SLURM_CPUS_PER_TASK', os.environ.get('NUM_PROCESSES', 1)))
        config = replace(config, processes=max(1, num_cores))

    logger.info(f"Starting simulation {config.label} with seed={config.seed}, n={config.n}, "
                f"M={config.n_imputations}")
    if reference is None:
        reference = load_reference_parameters(config)
    study = SimulationStudy(config, reference)
    recorder = study.run_parallel(recorder=ResultRecorder(config))

    if save:
        recorder.save()
    results = recorder.to_frame()
    n_failed = int((results['rc'] != 0).sum())
    logger.info(f"Simulation complete: {len(results)} datasets, {n_failed} failed")
    return results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Missing-data strategies for longitudinal scale scores")
    parser.add_argument('--config', help="JSON configuration file")
    parser.add_argument('--scenario', type=int, choices=(1, 2, 3))
    parser.add_argument('--strategy', type=int, choices=range(6))
    parser.add_argument('--method', choices=('cc', 'mvn', 'fcs'))
    parser.add_argument('--rule', type=int, choices=(0, 1, 2))
    parser.add_argument('--simno-start', dest='simno_start', type=int)
    parser.add_argument('--simno-end', dest='simno_end', type=int)
    parser.add_argument('--seed', type=int)
    parser.add_argument('--n', type=int)
    parser.add_argument('--n-imputations', dest='n_imputations', type=int)
    parser.add_argument('--processes', type=int)
    parser.add_argument('--output-dir', dest='output_dir')
    parser.add_argument('--save-datasets', dest='save_datasets', action='store_true', default=None)
    args = parser.parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != 'config' and v is not None}
    return args.config, overrides


if __name__ == "__main__":
    config_file, overrides = parse_args()
    run_simulation(config_file=config_file, **overrides)
