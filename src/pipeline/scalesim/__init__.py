"""Simulation study of missing-data strategies for longitudinal scale scores.

This package generates multi-wave questionnaire cohorts with covariate-driven
missingness, applies one of six strategies for the missing wave-4 scale score
(complete case or multiple imputation with different auxiliary variable sets)
and pools regression, mean and median estimates with Rubin's rules.

Basic Usage
-----------
>>> from src.pipeline.scalesim import SimulationConfig, SimulationStudy
>>>
>>> config = SimulationConfig(scenario=1, strategy=3, method='fcs', rule=2,
...                           simno_start=1, simno_end=2, seed=1)
>>> recorder = SimulationStudy(config).run_all()
>>> print(recorder.to_frame())

Modules
-------
layout : Waves, item forms and column naming
config : Run configuration and reference parameters
data_generators : Correlated latent draws and discretisation
missingness_patterns : Missingness scenarios
scale_scores : Wave-level scale scores
imputation_methods : Joint normal and chained-equation imputation
strategies : Missing-data strategies 0-5
evaluator : Target estimators and Rubin pooling
recorder : Result rows and result file
simulator : Study orchestration
"""

from .config import (
    ReferenceParameters,
    SimulationConfig,
    load_config,
    synthetic_reference_parameters,
)
from .data_generators import generate_data, sample_latent, discretize
from .missingness_patterns import MissingnessScenario, get_scenario
from .scale_scores import scale_score, add_scale_scores
from .imputation_methods import (
    ImputationMethod,
    ImputationModel,
    ConditionalModel,
    MVNImputation,
    FCSImputation,
)
from .strategies import (
    Strategy,
    CompleteCase,
    ItemImputation,
    ScoreImputation,
    WaveFourItemImputation,
    ItemByItemImputation,
    PrincipalComponentImputation,
    get_strategy,
)
from .evaluator import pool_estimates, evaluate_replicates
from .recorder import EstimateRecord, ResultRecorder
from .simulator import SimulationStudy
from .exceptions import InvalidCovariance, ImputationModelFailure, EstimationFailure

__version__ = '1.0.0'

__all__ = [
    # Configuration
    'ReferenceParameters',
    'SimulationConfig',
    'load_config',
    'synthetic_reference_parameters',

    # Data generation
    'generate_data',
    'sample_latent',
    'discretize',
    'MissingnessScenario',
    'get_scenario',

    # Scores
    'scale_score',
    'add_scale_scores',

    # Imputation
    'ImputationMethod',
    'ImputationModel',
    'ConditionalModel',
    'MVNImputation',
    'FCSImputation',

    # Strategies
    'Strategy',
    'CompleteCase',
    'ItemImputation',
    'ScoreImputation',
    'WaveFourItemImputation',
    'ItemByItemImputation',
    'PrincipalComponentImputation',
    'get_strategy',

    # Evaluation and simulation
    'pool_estimates',
    'evaluate_replicates',
    'EstimateRecord',
    'ResultRecorder',
    'SimulationStudy',

    # Errors
    'InvalidCovariance',
    'ImputationModelFailure',
    'EstimationFailure',
]
