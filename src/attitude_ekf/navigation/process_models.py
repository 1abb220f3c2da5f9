"""
===============================================================================
ATTITUDE EKF - Process Models
===============================================================================
State-transition models feeding the filter's time update. Each model owns
one 3-element slot of the state and returns its time derivative together
with the matching rows of the continuous-time Jacobian A. The filter forms

    x-  = x + f(x) * dt
    F   = I + A * dt
    P-  = F P F^T + Q * dt

BiasModel
    Random walk: d(b)/dt = w_b. Zero derivative and zero Jacobian rows; only
    its noise density grows the covariance.

AttitudeDeviationModel
    Error dynamics of the right-perturbation attitude error when the
    rotation estimate is propagated with w_hat = y_gyro - b_g_hat:

        d(delta_theta)/dt = -[w_hat x] delta_theta - delta_b_g - n_g

    The delta_b_g term only enters through the Jacobian (-I on the gyro
    bias slot): the bias slot holds the estimate itself, which is already
    removed from the rate that propagates the rotation.

References
----------
    [1] Lefferts, Markley & Shuster, "Kalman Filtering for Spacecraft
        Attitude Estimation", JGCD, 1982.
===============================================================================
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from attitude_ekf.core.exceptions import ConfigurationError
from attitude_ekf.core.rotation import skew_symmetric
from attitude_ekf.navigation.environment import ModelEnvironment, StateLayout
from attitude_ekf.navigation.models import ProcessModel


class BiasModel(ProcessModel):
    """
    Random-walk bias model for one bias slot of the state.

    Parameters
    ----------
    layout : StateLayout
        State partition of the filter.
    slot : str
        Which slot the bias occupies: 'gyro_bias' (default) or 'accel_bias'.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None,
                 slot: str = "gyro_bias") -> None:
        if slot not in ("gyro_bias", "accel_bias"):
            raise ConfigurationError(f"BiasModel slot must be a bias slot, got {slot!r}")
        super().__init__(layout, name, variance)
        self._slot = self._require_slot(slot)

    @property
    def state_slice(self) -> slice:
        return self._slot

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        return np.zeros(3)

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        return np.zeros((3, self.layout.size))


class AttitudeDeviationModel(ProcessModel):
    """
    Attitude-deviation dynamics driven by the bias-corrected gyro rate.

    Reads env.rate (w_bn_hat). Requires an attitude slot; the gyro bias
    coupling is added when the layout also carries a gyro_bias slot.
    """

    def __init__(self, layout: StateLayout, name: Optional[str] = None,
                 variance: Optional[np.ndarray] = None) -> None:
        super().__init__(layout, name, variance)
        self._slot = self._require_slot("attitude")

    @property
    def state_slice(self) -> slice:
        return self._slot

    def run_model(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        rate = np.asarray(env.require("rate", self.name))
        return -skew_symmetric(rate) @ x[self._slot]

    def jacobian(self, x: np.ndarray, env: ModelEnvironment) -> np.ndarray:
        rate = np.asarray(env.require("rate", self.name))
        A = np.zeros((3, self.layout.size))
        A[:, self._slot] = -skew_symmetric(rate)
        if self.layout.gyro_bias is not None:
            A[:, self.layout.gyro_bias] = -np.eye(3)
        return A
