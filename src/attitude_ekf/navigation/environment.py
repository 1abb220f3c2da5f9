"""
===============================================================================
ATTITUDE EKF - Model Environment and State Layouts
===============================================================================
Models never hold references to quantities owned by someone else. At the
start of every evaluation they receive a read-only ModelEnvironment snapshot
carrying the current rotation estimate, rate estimate, bias estimates,
reference acceleration and time step. A StateLayout tells a model which
slice of the filter state holds each estimated quantity.

Two layouts are used by the simulation:

    ATTITUDE_LAYOUT    x = [delta_theta(3), gyro_bias(3)]
    ACCEL_BIAS_LAYOUT  x = [accel_bias(3)]
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from attitude_ekf.core.exceptions import ConfigurationError, DimensionError


def _frozen_array(value: Optional[np.ndarray], shape: tuple,
                  name: str) -> Optional[np.ndarray]:
    if value is None:
        return None
    arr = np.array(value, dtype=np.float64)
    if arr.shape != shape:
        raise DimensionError(f"{name} must have shape {shape}, got {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class StateLayout:
    """
    Partition of a filter state vector into named 3-element slots.

    Parameters
    ----------
    size : int
        Total state dimension.
    attitude : slice, optional
        Slot of the attitude deviation delta_theta.
    gyro_bias : slice, optional
        Slot of the gyroscope bias estimate.
    accel_bias : slice, optional
        Slot of the accelerometer bias estimate.
    """

    size: int
    attitude: Optional[slice] = None
    gyro_bias: Optional[slice] = None
    accel_bias: Optional[slice] = None

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise DimensionError(f"State size must be positive, got {self.size}")
        taken = np.zeros(self.size, dtype=bool)
        for name in ("attitude", "gyro_bias", "accel_bias"):
            slot = getattr(self, name)
            if slot is None:
                continue
            start, stop, step = slot.indices(self.size)
            if step != 1 or stop - start != 3:
                raise DimensionError(
                    f"{name} slot {slot} must be a contiguous 3-element "
                    f"slice inside a state of size {self.size}"
                )
            if taken[start:stop].any():
                raise DimensionError(f"{name} slot {slot} overlaps another slot")
            taken[start:stop] = True

    def zeros(self) -> np.ndarray:
        """Return a zero state vector of this layout's size."""
        return np.zeros(self.size, dtype=np.float64)


ATTITUDE_LAYOUT = StateLayout(size=6, attitude=slice(0, 3), gyro_bias=slice(3, 6))
ACCEL_BIAS_LAYOUT = StateLayout(size=3, accel_bias=slice(0, 3))


@dataclass(frozen=True, eq=False)
class ModelEnvironment:
    """
    Read-only snapshot of the shared quantities a model may read.

    Any field may be None; a model that needs a missing field raises
    ConfigurationError when evaluated.

    Attributes
    ----------
    rotation : np.ndarray (3, 3), optional
        Current rotation estimate R_bn_hat (body to navigation).
    rate : np.ndarray (3,), optional
        Current angular rate estimate w_bn_hat (rad/s, body frame).
    gyro_bias : np.ndarray (3,), optional
        Gyro bias estimate for models whose state does not carry it.
    accel_bias : np.ndarray (3,), optional
        Accelerometer bias estimate for models whose state does not carry it.
    acceleration : np.ndarray (3,), optional
        Reference kinematic acceleration a_nn in the navigation frame (m/s^2).
    dt : float, optional
        Time step (s).
    """

    rotation: Optional[np.ndarray] = None
    rate: Optional[np.ndarray] = None
    gyro_bias: Optional[np.ndarray] = None
    accel_bias: Optional[np.ndarray] = None
    acceleration: Optional[np.ndarray] = field(
        default_factory=lambda: np.zeros(3))
    dt: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rotation",
                           _frozen_array(self.rotation, (3, 3), "rotation"))
        for name in ("rate", "gyro_bias", "accel_bias", "acceleration"):
            object.__setattr__(self, name,
                               _frozen_array(getattr(self, name), (3,), name))
        if self.dt is not None:
            if not self.dt > 0.0:
                raise ConfigurationError(f"dt must be positive, got {self.dt}")
            object.__setattr__(self, "dt", float(self.dt))

    def require(self, name: str, model_name: str = "model"):
        """Return the named field, failing fast if it was not provided."""
        value = getattr(self, name)
        if value is None:
            raise ConfigurationError(
                f"{model_name} requires '{name}' in its environment, "
                "but it was not provided"
            )
        return value

    def with_updates(self, **changes) -> "ModelEnvironment":
        """Return a copy of the snapshot with some fields replaced."""
        return replace(self, **changes)
