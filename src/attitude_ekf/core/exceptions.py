"""
===============================================================================
ATTITUDE EKF - Estimator Exceptions
===============================================================================
Exception hierarchy shared by the models, the Kalman filter engine and the
simulation driver.

    EstimatorError
      +-- ConfigurationError   wiring bugs (missing inputs, bad options)
      +-- DimensionError       vector/matrix size mismatches
      +-- NumericalError
            +-- InnovationCovarianceError   singular or ill-conditioned S
            +-- CovarianceError             P lost symmetry / PSD
            +-- MeasurementError            non-finite or off-manifold measurement

Configuration and dimension errors subclass ValueError so callers that
already guard against bad arguments catch them naturally.
===============================================================================
"""


class EstimatorError(Exception):
    """Base class for all estimator errors."""


class ConfigurationError(EstimatorError, ValueError):
    """A model or filter was used before it was fully configured."""


class DimensionError(EstimatorError, ValueError):
    """Stacked vectors and matrices do not have matching sizes."""


class NumericalError(EstimatorError, ArithmeticError):
    """A numeric health check failed during a filter step."""


class InnovationCovarianceError(NumericalError):
    """The innovation covariance cannot be safely inverted."""

    def __init__(self, message: str, condition_number: float = float("inf")) -> None:
        super().__init__(message)
        self.condition_number = condition_number


class CovarianceError(NumericalError):
    """The state error covariance is no longer symmetric positive-semi-definite."""

    def __init__(self, message: str, min_eigenvalue: float = float("nan")) -> None:
        super().__init__(message)
        self.min_eigenvalue = min_eigenvalue


class MeasurementError(NumericalError, ValueError):
    """A measurement is not finite or does not lie on its manifold."""
