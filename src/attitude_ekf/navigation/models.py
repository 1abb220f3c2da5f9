"""
===============================================================================
ATTITUDE EKF - Linearizable Model Abstraction
===============================================================================
Every process and sensor model presents the same interface to the Kalman
filter engine:

    run_model(x, env)   -> expected output at the linearization point
    jacobian(x, env)    -> d(run_model)/dx, analytic
    variance            -> the model's own noise covariance
    name                -> label for logging and telemetry

The filter only ever consumes the output and its Jacobian through
evaluate(), which bundles them with the noise covariance and checks every
dimension against the model's StateLayout before anything is stacked.

Model variants form a closed set:

    sensors:  Gyroscope, Accelerometer, Magnetometer,
              UncalibratedAccelerometer, AttitudeSensor   (navigation.sensors)
    process:  BiasModel, AttitudeDeviationModel           (navigation.process_models)

Process models return a state-derivative contribution for the slot they
own; the filter integrates it over dt. Sensor models return an expected
measurement; the filter compares it against measurement_vector().
===============================================================================
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from attitude_ekf.core.exceptions import ConfigurationError, DimensionError, MeasurementError
from attitude_ekf.navigation.environment import ModelEnvironment, StateLayout
from attitude_ekf.simulation.noise import sample_mvn

logger = logging.getLogger(__name__)

_SYMMETRY_TOLERANCE = 1e-12
_PSD_TOLERANCE = 1e-12


@dataclass(frozen=True, eq=False)
class ModelOutput:
    """Linearization of one model at one state: h(x), dh/dx and noise."""

    name: str
    output: np.ndarray
    jacobian: np.ndarray
    variance: np.ndarray


class Model(ABC):
    """
    Base class for all linearizable process and sensor models.

    Parameters
    ----------
    layout : StateLayout
        Partition of the state vector of the filter this model feeds.
    name : str, optional
        Human-readable label. Defaults to the lower-cased class name.
    variance : np.ndarray, optional
        Noise covariance, shape (output_size, output_size). May also be set
        later with set_variance().
    """

    output_size: int = 3

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None) -> None:
        self.layout = layout
        self._name = name if name is not None else type(self).__name__.lower()
        self._variance: Optional[np.ndarray] = None
        if variance is not None:
            self.set_variance(variance)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    @property
    def name(self) -> str:
        return self._name

    def set_model_name(self, name: str) -> None:
        """Set the label used in logs. Has no effect on the numerics."""
        self._name = str(name)

    @property
    def variance(self) -> np.ndarray:
        """Noise covariance. Raises ConfigurationError if never set."""
        if self._variance is None:
            raise ConfigurationError(
                f"Model '{self._name}' has no noise covariance; call set_variance() first"
            )
        return self._variance.copy()

    def set_variance(self, variance: np.ndarray) -> None:
        """
        Set the model's noise covariance.

        Parameters
        ----------
        variance : np.ndarray
            Symmetric positive-semi-definite matrix of shape
            (output_size, output_size). A scalar is broadcast to a multiple
            of the identity.

        Raises
        ------
        DimensionError
            If the matrix has the wrong shape.
        ConfigurationError
            If the matrix is not symmetric or has negative eigenvalues.
        """
        variance = np.asarray(variance, dtype=np.float64)
        if variance.ndim == 0:
            variance = float(variance) * np.eye(self.output_size)

        expected = (self.output_size, self.output_size)
        if variance.shape != expected:
            raise DimensionError(
                f"Model '{self._name}' variance must be {expected}, got {variance.shape}"
            )
        if not np.allclose(variance, variance.T, atol=_SYMMETRY_TOLERANCE):
            raise ConfigurationError(f"Model '{self._name}' variance is not symmetric")
        min_eig = float(np.min(np.linalg.eigvalsh(variance)))
        if min_eig < -_PSD_TOLERANCE:
            raise ConfigurationError(
                f"Model '{self._name}' variance is not positive-semi-definite "
                f"(min eigenvalue {min_eig:.3e})"
            )
        self._variance = 0.5 * (variance + variance.T)
        logger.debug("Model %s variance set, trace=%.3e", self._name,
                     float(np.trace(self._variance)))

    # =========================================================================
    # MODEL EQUATIONS
    # =========================================================================

    @abstractmethod
    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        """Expected output of the model at state x."""

    @abstractmethod
    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        """Analytic Jacobian of run_model with respect to x."""

    def numerical_jacobian(self, x: np.ndarray, env: ModelEnvironment,
                           step: float = 1e-6) -> np.ndarray:
        """
        Central-difference Jacobian of run_model.

        Shared infrastructure for models without a closed form, and the
        reference the analytic Jacobians are checked against.
        """
        x = self._check_state(x)
        H = np.zeros((self.output_size, x.size))
        for j in range(x.size):
            dx = np.zeros(x.size)
            dx[j] = step
            H[:, j] = (self.run_model(x + dx, env)
                       - self.run_model(x - dx, env)) / (2.0 * step)
        return H

    def evaluate(self, x: np.ndarray, env: ModelEnvironment) -> ModelOutput:
        """
        Linearize the model at x.

        Returns
        -------
        ModelOutput
            Output vector, Jacobian and noise covariance, all size-checked.
        """
        x = self._check_state(x)
        variance = self.variance
        output = np.asarray(self.run_model(x, env), dtype=np.float64).reshape(-1)
        H = np.asarray(self.jacobian(x, env), dtype=np.float64)

        if output.shape != (self.output_size,):
            raise DimensionError(
                f"Model '{self._name}' produced output of shape {output.shape}, "
                f"expected ({self.output_size},)"
            )
        if H.shape != (self.output_size, self.layout.size):
            raise DimensionError(
                f"Model '{self._name}' produced Jacobian of shape {H.shape}, "
                f"expected ({self.output_size}, {self.layout.size})"
            )
        return ModelOutput(self._name, output, H, variance)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _check_state(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        if x.size != self.layout.size:
            raise DimensionError(
                f"Model '{self._name}' expects a state of size {self.layout.size}, "
                f"got {x.size}"
            )
        return x

    def _require_slot(self, slot_name: str) -> slice:
        slot = getattr(self.layout, slot_name)
        if slot is None:
            raise ConfigurationError(
                f"Model '{self._name}' needs a '{slot_name}' slot in its state layout"
            )
        return slot

    def _slot_or_env(self, x: np.ndarray, env: ModelEnvironment,
                     slot_name: str) -> np.ndarray:
        """Read a quantity from the state if the layout carries it, else from env."""
        slot = getattr(self.layout, slot_name)
        if slot is not None:
            return x[slot]
        return np.asarray(env.require(slot_name, self._name))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, state_size={self.layout.size})"


class SensorModel(Model):
    """
    Measurement model: expected sensor output given the state estimate.

    Holds the latest raw measurement until it is overwritten. Truth
    instances of the same class synthesize measurements with
    get_noisy_output(), drawing from the model's own covariance.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance)
        self._measurement: Optional[np.ndarray] = None

    def add_measurement(self, measurement: np.ndarray) -> None:
        """Store the latest measurement for the next filter update."""
        measurement = np.asarray(measurement, dtype=np.float64).reshape(-1)
        if measurement.shape != (self.output_size,):
            raise DimensionError(
                f"Sensor '{self._name}' measurement must have {self.output_size} "
                f"elements, got {measurement.size}"
            )
        if not np.all(np.isfinite(measurement)):
            raise MeasurementError(
                f"Sensor '{self._name}' measurement is not finite: {measurement}"
            )
        self._measurement = measurement.copy()

    @property
    def measurement(self) -> Optional[np.ndarray]:
        """Latest raw measurement, or None before the first one arrives."""
        return None if self._measurement is None else self._measurement.copy()

    def measurement_vector(self, env: ModelEnvironment) -> np.ndarray:
        """Measurement expressed in the same space as run_model()."""
        if self._measurement is None:
            raise ConfigurationError(
                f"Sensor '{self._name}' has no measurement; call add_measurement() first"
            )
        return self._measurement.copy()

    def get_output(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        """Noise-free output at state x."""
        return self.run_model(self._check_state(x), env)

    def get_noisy_output(self, x: np.ndarray, env: ModelEnvironment,
                         rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Output at state x plus one draw from N(0, variance)."""
        return self.get_output(x, env) + sample_mvn(self.variance, rng)


class ProcessModel(Model):
    """
    State-transition model for one slot of the filter state.

    run_model() returns d(x[state_slice])/dt and jacobian() returns the
    matching rows of the continuous-time Jacobian, shape
    (output_size, layout.size). variance is the continuous-time noise
    density of the slot; the filter scales it by dt.
    """

    @property
    @abstractmethod
    def state_slice(self) -> slice:
        """Rows of the state vector driven by this model."""
