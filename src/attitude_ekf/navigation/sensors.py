"""
===============================================================================
ATTITUDE EKF - Sensor Measurement Models
===============================================================================
Measurement models for the attitude and calibration filters. Each sensor
class computes an expected measurement from the state estimate plus the
environment snapshot, and an analytic Jacobian with respect to whichever
slots of its StateLayout it observes.

Sensors implemented:
  Gyroscope                  -- body rate plus gyro bias
  Accelerometer              -- specific force in the body frame plus bias
  Magnetometer               -- reference magnetic field in the body frame
  UncalibratedAccelerometer  -- accelerometer whose bias is the filter state
  AttitudeSensor             -- direct rotation measurement (star tracker)

Error model (right perturbation of the rotation estimate):

    R_bn = R_bn_hat @ rotate_vector(delta_theta)
    R_bn^T v_n ~= R_bn_hat^T v_n + [R_bn_hat^T v_n x] delta_theta

so the attitude block of every body-frame vector sensor is [h x], where h is
the predicted body-frame vector.

The same classes serve as truth instances: evaluated against the true
rotation and true biases, get_noisy_output() synthesizes a measurement.
===============================================================================
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from attitude_ekf.core.constants import GRAVITY_NAV, MAGNETIC_FIELD_NAV
from attitude_ekf.core.exceptions import ConfigurationError, DimensionError, MeasurementError
from attitude_ekf.core.rotation import (
    is_rotation_matrix,
    rotate_vector,
    rotation_log,
    skew_symmetric,
)
from attitude_ekf.navigation.environment import ModelEnvironment, StateLayout
from attitude_ekf.navigation.models import SensorModel
from attitude_ekf.simulation.noise import sample_mvn


def _perturbed_rotation(model: SensorModel, x: np.ndarray,
                        env: ModelEnvironment) -> np.ndarray:
    """R_bn_hat @ rotate_vector(delta_theta), or R_bn_hat if no attitude slot."""
    R_hat = env.require("rotation", model.name)
    slot = model.layout.attitude
    if slot is None:
        return R_hat
    return R_hat @ rotate_vector(x[slot])


# =============================================================================
# GYROSCOPE
# =============================================================================

class Gyroscope(SensorModel):
    """
    Three-axis rate gyroscope.

    Measurement model:

        y_gyro = w_bn + b_g

    The rate comes from env.rate. The bias comes from the state when the
    layout has a gyro_bias slot (H = I on that slot), else from
    env.gyro_bias.
    """

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        rate = np.asarray(env.require("rate", self.name))
        return rate + self._slot_or_env(x, env, "gyro_bias")

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        H = np.zeros((3, self.layout.size))
        if self.layout.gyro_bias is not None:
            H[:, self.layout.gyro_bias] = np.eye(3)
        return H

    def corrected_rate(self, gyro_bias: np.ndarray) -> np.ndarray:
        """
        Angular rate estimate w_bn_hat = y_gyro - b_g_hat.

        Uses the latest stored measurement; raises ConfigurationError if
        none has been added yet.
        """
        gyro_bias = np.asarray(gyro_bias, dtype=np.float64).reshape(-1)
        if gyro_bias.shape != (3,):
            raise DimensionError(f"Gyro bias must have 3 elements, got {gyro_bias.size}")
        if self._measurement is None:
            raise ConfigurationError(
                f"Sensor '{self.name}' has no measurement; call add_measurement() first"
            )
        return self._measurement - gyro_bias


# =============================================================================
# ACCELEROMETER
# =============================================================================

class Accelerometer(SensorModel):
    """
    Three-axis accelerometer measuring specific force in the body frame.

    Measurement model:

        f_n     = a_nn - g_n
        y_accel = R_bn^T f_n + b_a

    env.acceleration supplies a_nn. Attitude enters through the layout's
    attitude slot; the bias comes from the accel_bias slot if present, else
    from env.accel_bias.

    Parameters
    ----------
    layout : StateLayout
        State partition of the filter this model feeds.
    gravity : np.ndarray, optional
        Gravity vector in the navigation frame. Defaults to GRAVITY_NAV.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None,
                 gravity: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance)
        self.gravity = np.array(GRAVITY_NAV if gravity is None else gravity,
                                dtype=np.float64).reshape(3)

    def specific_force_nav(self, env: ModelEnvironment) -> np.ndarray:
        """Specific force f_n = a_nn - g_n in the navigation frame."""
        return np.asarray(env.require("acceleration", self.name)) - self.gravity

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        R = _perturbed_rotation(self, x, env)
        return R.T @ self.specific_force_nav(env) + self._slot_or_env(x, env, "accel_bias")

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        H = np.zeros((3, self.layout.size))
        if self.layout.attitude is not None:
            R = _perturbed_rotation(self, x, env)
            H[:, self.layout.attitude] = skew_symmetric(R.T @ self.specific_force_nav(env))
        if self.layout.accel_bias is not None:
            H[:, self.layout.accel_bias] = np.eye(3)
        return H


# =============================================================================
# MAGNETOMETER
# =============================================================================

class Magnetometer(SensorModel):
    """
    Three-axis magnetometer.

    Measurement model:

        y_magn = R_bn^T m_n

    Parameters
    ----------
    field : np.ndarray, optional
        Reference field in the navigation frame. Defaults to
        MAGNETIC_FIELD_NAV. Must be non-zero.
    """

    _MIN_FIELD_NORM = 1e-9

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None,
                 field: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance)
        self.field = np.array(MAGNETIC_FIELD_NAV if field is None else field,
                              dtype=np.float64).reshape(3)
        if np.linalg.norm(self.field) < self._MIN_FIELD_NORM:
            raise ConfigurationError("Magnetometer reference field is too small")

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        return _perturbed_rotation(self, x, env).T @ self.field

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        H = np.zeros((3, self.layout.size))
        if self.layout.attitude is not None:
            H[:, self.layout.attitude] = skew_symmetric(self.run_model(x, env))
        return H


# =============================================================================
# UNCALIBRATED ACCELEROMETER
# =============================================================================

class UncalibratedAccelerometer(Accelerometer):
    """
    Accelerometer used to calibrate its own bias.

    The rotation is taken as known (env.rotation, no attitude columns) and
    the bias is the estimated state:

        y_accel = R_bn_hat^T f_n + b_a(x)        H = [I] on accel_bias

    The layout must carry an accel_bias slot.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None,
                 gravity: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance, gravity)
        self._bias_slot = self._require_slot("accel_bias")

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        R_hat = np.asarray(env.require("rotation", self.name))
        return R_hat.T @ self.specific_force_nav(env) + x[self._bias_slot]

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        H = np.zeros((3, self.layout.size))
        H[:, self._bias_slot] = np.eye(3)
        return H


# =============================================================================
# ATTITUDE SENSOR
# =============================================================================

class AttitudeSensor(SensorModel):
    """
    Direct attitude measurement, e.g. a star tracker.

    The raw measurement is a rotation matrix R_meas. It is expressed in the
    tangent space of the current estimate, so the innovation is a 3-vector:

        z      = log(R_bn_hat^T R_meas)
        h(x)   = delta_theta                    H = [I] on attitude

    Truth instances return rotation matrices from get_output() and
    get_noisy_output(); the noise is a body-frame rotation vector drawn from
    the model's covariance.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance)
        self._attitude_slot = self._require_slot("attitude")

    def add_measurement(self, measurement: np.ndarray) -> None:
        """Store a measured rotation matrix (3x3, orthonormal)."""
        measurement = np.asarray(measurement, dtype=np.float64)
        if measurement.shape != (3, 3):
            raise DimensionError(
                f"Sensor '{self.name}' measurement must be a 3x3 rotation, "
                f"got shape {measurement.shape}"
            )
        if not np.all(np.isfinite(measurement)):
            raise MeasurementError(f"Sensor '{self.name}' measurement is not finite")
        if not is_rotation_matrix(measurement, tolerance=1e-6):
            raise MeasurementError(f"Sensor '{self.name}' measurement is not a rotation matrix")
        self._measurement = measurement.copy()

    def measurement_vector(self, env: ModelEnvironment) -> np.ndarray:
        R_meas = super().measurement_vector(env)
        R_hat = np.asarray(env.require("rotation", self.name))
        return rotation_log(R_hat.T @ R_meas)

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        return x[self._attitude_slot].copy()

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        H = np.zeros((3, self.layout.size))
        H[:, self._attitude_slot] = np.eye(3)
        return H

    def get_output(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        return _perturbed_rotation(self, self._check_state(x), env)

    def get_noisy_output(self, x: np.ndarray, env: ModelEnvironment,
                         rng: Optional[np.random.Generator] = None) -> np.ndarray:
        return self.get_output(x, env) @ rotate_vector(sample_mvn(self.variance, rng))
