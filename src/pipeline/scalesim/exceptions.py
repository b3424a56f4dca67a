"""Error taxonomy and completion codes for the simulation study."""

# Completion codes written to the result file
RC_OK = 0
RC_IMPUTATION_FAILED = 1
RC_ESTIMATION_FAILED = 2


class SimulationError(Exception):
    """Base class for all study errors."""


class InvalidCovariance(SimulationError, ValueError):
    """Raised when the correlation matrix cannot be used for sampling.

    Fatal for the dataset being generated.
    """


class ImputationModelFailure(SimulationError, RuntimeError):
    """Raised when an imputation model cannot be fitted or does not converge.

    Recoverable: the per-dataset pipeline records ``RC_IMPUTATION_FAILED``
    and carries on with the next dataset.
    """

    code = RC_IMPUTATION_FAILED


class EstimationFailure(SimulationError, RuntimeError):
    """Raised when a target estimator has no usable data."""

    code = RC_ESTIMATION_FAILED
