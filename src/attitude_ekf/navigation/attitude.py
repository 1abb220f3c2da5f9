"""
===============================================================================
ATTITUDE EKF - Multiplicative Attitude Correction
===============================================================================
The attitude filter does not estimate the rotation itself. It estimates a
small right-perturbation delta_theta of a separately held rotation estimate:

    R_bn = R_bn_hat @ rotate_vector(delta_theta)

After each measurement update the deviation is folded into the rotation and
the deviation sub-state is reset to zero (the "reset step" of a
multiplicative EKF). Between updates the rotation is propagated with the
bias-corrected gyro rate. Bias slots of the filter are never touched here.

The covariance is left as is at the reset; for small corrections the
reset Jacobian is close to identity.

References
----------
    [1] Markley, F.L., "Attitude Error Representations for Kalman
        Filtering", JGCD, Vol. 26, No. 2, 2003.
===============================================================================
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from attitude_ekf.core.exceptions import ConfigurationError, DimensionError
from attitude_ekf.core.rotation import is_rotation_matrix, orthonormalize, rotate_vector
from attitude_ekf.navigation.environment import ATTITUDE_LAYOUT, StateLayout
from attitude_ekf.navigation.kalman_filter import KalmanFilter

logger = logging.getLogger(__name__)


class AttitudeEstimate:
    """
    Rotation estimate paired with the deviation sub-state of a filter.

    Parameters
    ----------
    kalman_filter : KalmanFilter
        Filter whose state carries the attitude deviation.
    rotation : np.ndarray, optional
        Initial R_bn_hat (3x3). Defaults to identity.
    layout : StateLayout, optional
        Partition of the filter state. Defaults to ATTITUDE_LAYOUT.
    """

    def __init__(self, kalman_filter: KalmanFilter,
                 rotation: Optional[np.ndarray] = None,
                 layout: StateLayout = ATTITUDE_LAYOUT) -> None:
        if layout.attitude is None:
            raise ConfigurationError("AttitudeEstimate needs a layout with an attitude slot")
        if layout.size != kalman_filter.state_size:
            raise DimensionError(
                f"Layout size {layout.size} does not match filter "
                f"'{kalman_filter.name}' state size {kalman_filter.state_size}"
            )

        self.kf = kalman_filter
        self.layout = layout

        R = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        if R.shape != (3, 3):
            raise DimensionError(f"Rotation must be 3x3, got {R.shape}")
        if not is_rotation_matrix(R, tolerance=1e-6):
            raise ConfigurationError("Initial attitude is not a rotation matrix")
        self._R = orthonormalize(R)

    @property
    def rotation(self) -> np.ndarray:
        """Current rotation estimate R_bn_hat (copy)."""
        return self._R.copy()

    @property
    def deviation(self) -> np.ndarray:
        """Attitude deviation currently held by the filter."""
        return self.kf.get_state()[self.layout.attitude]

    @property
    def gyro_bias(self) -> np.ndarray:
        """Gyro bias estimate from the filter, or zeros if not estimated."""
        if self.layout.gyro_bias is None:
            return np.zeros(3)
        return self.kf.get_state()[self.layout.gyro_bias]

    def apply_correction(self) -> np.ndarray:
        """
        Fold the filter's attitude deviation into the rotation estimate.

        R_bn_hat <- R_bn_hat @ rotate_vector(delta_theta), then
        delta_theta <- 0 in the filter state.

        Returns
        -------
        np.ndarray
            The deviation that was applied (rad).
        """
        delta_theta = self.kf.reset_components(self.layout.attitude)
        if np.any(delta_theta):
            self._R = orthonormalize(self._R @ rotate_vector(delta_theta))
        logger.debug("Applied attitude correction |dtheta|=%.3e rad",
                     float(np.linalg.norm(delta_theta)))
        return delta_theta

    def propagate(self, rate: np.ndarray, dt: float) -> None:
        """Right-compose the body-rate increment rotate_vector(rate * dt)."""
        rate = np.asarray(rate, dtype=np.float64).reshape(-1)
        if rate.shape != (3,):
            raise DimensionError(f"Rate must have 3 elements, got {rate.size}")
        if not dt > 0.0:
            raise ConfigurationError(f"dt must be positive, got {dt}")
        self._R = orthonormalize(self._R @ rotate_vector(rate * dt))

    def __repr__(self) -> str:
        return f"AttitudeEstimate(filter={self.kf.name!r})"
