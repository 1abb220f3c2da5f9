"""
===============================================================================
ATTITUDE EKF - Truth Trajectory
===============================================================================
Reference ("true") rigid-body attitude motion that the truth sensors sample.

The body rate oscillates independently on each axis:

    w_bn(t) = cos(2*pi*f*t + phi)          [rad/s]

and the rotation is advanced by right-composing the body-frame increment
accumulated over one step:

    R_bn(t + dt) = R_bn(t) @ rotate_vector(w_bn(t) * dt)

A constant_rate override replaces the oscillation with a fixed rate, which
gives a closed-form trajectory R_bn(k*dt) = R_bn(0) @ rotate_vector(w*dt)^k.

The kinematic acceleration a_nn is constant (zero by default), so the
accelerometer sees only gravity. Sensor biases are constant.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from attitude_ekf.core.constants import (
    DEFAULT_OSCILLATION_FREQUENCY,
    DEFAULT_OSCILLATION_PHASE_DEG,
    DEG2RAD,
    TWO_PI,
)
from attitude_ekf.core.exceptions import DimensionError
from attitude_ekf.core.rotation import orthonormalize, rotate_vector
from attitude_ekf.navigation.environment import ModelEnvironment


def _vector3(value, name: str) -> np.ndarray:
    arr = np.array(value, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise DimensionError(f"{name} must have 3 elements, got {arr.size}")
    return arr


@dataclass
class SimulationContext:
    """Time bookkeeping of one simulation step."""

    t: float = 0.0
    k: int = 0
    dt: float = 0.01

    def advance(self) -> None:
        self.k += 1
        self.t = self.k * self.dt


class OscillationTruth:
    """
    True attitude, body rate, acceleration and sensor biases.

    Parameters
    ----------
    rotation : np.ndarray, optional
        Initial R_bn (3x3). Defaults to identity.
    gyro_bias, accel_bias : np.ndarray, optional
        Constant sensor biases (3,). Default zero.
    frequency : np.ndarray, optional
        Oscillation frequency per axis (Hz).
    phase_deg : np.ndarray, optional
        Oscillation phase per axis (deg).
    constant_rate : np.ndarray, optional
        If given, w_bn is held at this value instead of oscillating.
    acceleration : np.ndarray, optional
        Kinematic acceleration a_nn in the navigation frame. Default zero.
    """

    def __init__(self, rotation: Optional[np.ndarray] = None,
                 gyro_bias: Optional[np.ndarray] = None,
                 accel_bias: Optional[np.ndarray] = None,
                 frequency: Optional[np.ndarray] = None,
                 phase_deg: Optional[np.ndarray] = None,
                 constant_rate: Optional[np.ndarray] = None,
                 acceleration: Optional[np.ndarray] = None) -> None:
        R = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        if R.shape != (3, 3):
            raise DimensionError(f"Rotation must be 3x3, got {R.shape}")
        self.rotation = R

        zeros = np.zeros(3)
        self.gyro_bias = _vector3(zeros if gyro_bias is None else gyro_bias, "gyro_bias")
        self.accel_bias = _vector3(zeros if accel_bias is None else accel_bias, "accel_bias")
        self.acceleration = _vector3(zeros if acceleration is None else acceleration,
                                     "acceleration")
        self.frequency = _vector3(DEFAULT_OSCILLATION_FREQUENCY if frequency is None
                                  else frequency, "frequency")
        self.phase = _vector3(DEFAULT_OSCILLATION_PHASE_DEG if phase_deg is None
                              else phase_deg, "phase_deg") * DEG2RAD
        self.constant_rate = (None if constant_rate is None
                              else _vector3(constant_rate, "constant_rate"))

        self.rate = self.rate_at(0.0)

    def rate_at(self, t: float) -> np.ndarray:
        """True body rate w_bn at time t (rad/s)."""
        if self.constant_rate is not None:
            return self.constant_rate.copy()
        return np.cos(TWO_PI * self.frequency * t + self.phase)

    def environment(self, dt: Optional[float] = None) -> ModelEnvironment:
        """Snapshot of the true quantities for the truth sensor instances."""
        return ModelEnvironment(
            rotation=self.rotation,
            rate=self.rate,
            gyro_bias=self.gyro_bias,
            accel_bias=self.accel_bias,
            acceleration=self.acceleration,
            dt=dt,
        )

    def advance(self, ctx: SimulationContext) -> None:
        """Propagate the rotation over ctx.dt, then update the rate to ctx.t + dt."""
        self.rotation = orthonormalize(self.rotation @ rotate_vector(self.rate * ctx.dt))
        self.rate = self.rate_at(ctx.t + ctx.dt)

    def __repr__(self) -> str:
        mode = "constant" if self.constant_rate is not None else "oscillating"
        return f"OscillationTruth(rate={mode})"
