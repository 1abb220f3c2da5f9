"""
===============================================================================
ATTITUDE EKF - Simulation Engine
===============================================================================
Closed-loop attitude and sensor-bias estimation against a simulated truth.

Two filters run side by side:

    attitude_kf   x = [delta_theta, b_g_hat]   accel + magn updates
    accel_cal_kf  x = [b_a_hat]                uncalibrated accel updates

The attitude filter estimates a deviation of a separately held rotation
estimate (AttitudeEstimate); the calibration filter's bias estimate feeds
back into the attitude filter's accelerometer model through the environment
snapshot.

Every time step executes, in order:

    1. PROPAGATE  -- R_bn_hat <- R_bn_hat @ rotate_vector(w_bn_hat * dt),
                     using the previous step's rate estimate (not at k = 0).
    2. MEASURE    -- Sample the truth sensors, hand the samples to the
                     estimator sensor models.
    3. ATTITUDE   -- attitude_kf.ekf_update([accel, magn]).
    4. CORRECT    -- Fold delta_theta into R_bn_hat and reset it.
    5. RATE       -- w_bn_hat = y_gyro - b_g_hat, with b_g_hat taken before
                     or after step 3 (gyro_bias_timing).
    6. CALIBRATE  -- accel_cal_kf.ekf_update([uncal_accel]) linearized at
                     R_bn_hat before or after step 4
                     (calibration linearization).
    7. LOG        -- Record telemetry, then advance the truth.
===============================================================================
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np
import pandas as pd

from attitude_ekf.core.constants import RAD2DEG
from attitude_ekf.core.rotation import rotate_vector, rotation_angle_between
from attitude_ekf.navigation.attitude import AttitudeEstimate
from attitude_ekf.navigation.environment import (
    ACCEL_BIAS_LAYOUT,
    ATTITUDE_LAYOUT,
    ModelEnvironment,
)
from attitude_ekf.navigation.kalman_filter import KalmanFilter, UpdateReport
from attitude_ekf.navigation.process_models import AttitudeDeviationModel, BiasModel
from attitude_ekf.navigation.sensors import (
    Accelerometer,
    Gyroscope,
    Magnetometer,
    UncalibratedAccelerometer,
)
from attitude_ekf.simulation.config import SimulationConfig
from attitude_ekf.simulation.noise import NormalRandomVariable, sample_mvn
from attitude_ekf.simulation.truth import OscillationTruth, SimulationContext
from attitude_ekf.telemetry.telemetry_log import TelemetryLog

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SimulationContext, "AttitudeSimulation"], None]


class AttitudeSimulation:
    """
    Truth, sensors and both estimators wired into one time-stepped loop.

    Parameters
    ----------
    config : SimulationConfig, optional
        Typed run configuration. Defaults to SimulationConfig().
    rng : np.random.Generator, optional
        Random source for the initial draws and sensor noise. Defaults to a
        generator seeded from config.time.seed.

    Attributes
    ----------
    truth : OscillationTruth
        True attitude, rate and biases.
    attitude_kf, accel_cal_kf : KalmanFilter
        Attitude/gyro-bias filter and accelerometer-bias filter.
    attitude : AttitudeEstimate
        Rotation estimate corrected by attitude_kf.
    rate_estimate : np.ndarray
        Bias-corrected body rate w_bn_hat (rad/s).
    telemetry : TelemetryLog
        Per-step signal log.
    """

    def __init__(self, config: Optional[SimulationConfig] = None,
                 rng: Optional[np.random.Generator] = None) -> None:
        self.config = config if config is not None else SimulationConfig()
        cfg = self.config
        self.rng = rng if rng is not None else np.random.default_rng(cfg.time.seed)
        self.ctx = SimulationContext(dt=cfg.time.dt)

        self._build_truth()
        self._build_estimators()
        self._build_telemetry()

        logger.info("AttitudeSimulation created.  dt=%.3f s", cfg.time.dt)

    # =========================================================================
    # SETUP
    # =========================================================================

    def _build_truth(self) -> None:
        cfg = self.config
        gyro_bias = sample_mvn(cfg.truth.gyro_bias_variance, self.rng)
        accel_bias = sample_mvn(cfg.truth.accel_bias_variance, self.rng)
        eta = NormalRandomVariable(cfg.truth.initial_attitude_error_variance, self.rng)

        self.truth = OscillationTruth(
            rotation=rotate_vector(eta()),
            gyro_bias=gyro_bias,
            accel_bias=accel_bias,
            frequency=cfg.truth.frequency,
            phase_deg=cfg.truth.phase_deg,
            constant_rate=cfg.truth.constant_rate,
            acceleration=cfg.truth.acceleration,
        )

        def noise(cov: np.ndarray) -> np.ndarray:
            return cov if cfg.truth.sensor_noise else np.zeros((3, 3))

        gravity = np.array([0.0, 0.0, -cfg.sensors.gravity])
        self.accel_truth = Accelerometer(ATTITUDE_LAYOUT, "accel",
                                         noise(cfg.sensors.accel_variance), gravity=gravity)
        self.magn_truth = Magnetometer(ATTITUDE_LAYOUT, "magn",
                                       noise(cfg.sensors.magn_variance),
                                       field=cfg.sensors.magnetic_field)
        self.gyro_truth = Gyroscope(ATTITUDE_LAYOUT, "gyro", noise(cfg.sensors.gyro_variance))

        self.y_accel = np.zeros(3)
        self.y_magn = np.zeros(3)
        self.y_gyro = np.zeros(3)

    def _build_estimators(self) -> None:
        cfg = self.config
        gravity = np.array([0.0, 0.0, -cfg.sensors.gravity])

        # Attitude and gyro-bias filter
        self.accel_model = Accelerometer(ATTITUDE_LAYOUT, "accel",
                                         cfg.sensors.accel_variance, gravity=gravity)
        self.magn_model = Magnetometer(ATTITUDE_LAYOUT, "magn", cfg.sensors.magn_variance,
                                       field=cfg.sensors.magnetic_field)
        self.gyro_model = Gyroscope(ATTITUDE_LAYOUT, "gyro", cfg.sensors.gyro_variance)

        attitude_noise = cfg.attitude_filter.attitude_process_noise
        if attitude_noise is None:
            attitude_noise = cfg.sensors.gyro_variance
        self.deviation_model = AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation",
                                                      attitude_noise)
        self.gyro_bias_model = BiasModel(ATTITUDE_LAYOUT, "gyro_bias",
                                         cfg.attitude_filter.gyro_bias_random_walk)

        self.attitude_kf = KalmanFilter(ATTITUDE_LAYOUT.zeros(),
                                        cfg.attitude_filter.initial_covariance,
                                        name="attitude", config=cfg.numerics)
        self.attitude_kf.add_models([self.deviation_model, self.gyro_bias_model])
        self.attitude = AttitudeEstimate(self.attitude_kf)

        # Accelerometer-bias filter, constant bias with no process model
        self.uncal_accel_model = UncalibratedAccelerometer(
            ACCEL_BIAS_LAYOUT, "uncal_accel", cfg.sensors.accel_variance, gravity=gravity)
        self.accel_cal_kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(),
                                         cfg.calibration_filter.initial_covariance,
                                         name="accel_cal", config=cfg.numerics)

        self.acceleration_estimate = np.zeros(3)
        self.rate_estimate = np.zeros(3)
        self.attitude_report: Optional[UpdateReport] = None
        self.last_attitude_error = self.attitude_error()
        self.calibration_report: Optional[UpdateReport] = None

    def _build_telemetry(self) -> None:
        tlm = TelemetryLog(self.config.telemetry.path)
        truth = self.truth

        tlm.add_signal("t", lambda: self.ctx.t)
        tlm.add_signal("b_g", lambda: truth.gyro_bias)
        tlm.add_signal("b_a", lambda: truth.accel_bias)
        tlm.add_signal("R_bn", lambda: truth.rotation)
        tlm.add_signal("a_nn", lambda: truth.acceleration)
        tlm.add_signal("w_bn", lambda: truth.rate)
        tlm.add_signal("accel", lambda: self.y_accel)
        tlm.add_signal("magn", lambda: self.y_magn)
        tlm.add_signal("gyro", lambda: self.y_gyro)
        tlm.add_signal("x_hat", self.attitude_kf.get_state)
        tlm.add_signal("b_g_hat", lambda: self.attitude.gyro_bias)
        tlm.add_signal("b_a_hat", self.accel_cal_kf.get_state)
        tlm.add_signal("R_bn_hat", lambda: self.attitude.rotation)
        tlm.add_signal("a_nn_hat", lambda: self.acceleration_estimate)
        tlm.add_signal("w_bn_hat", lambda: self.rate_estimate)
        tlm.add_signal("P_hat", self.attitude_kf.get_covariance)
        tlm.add_signal("attitude_error", lambda: self.last_attitude_error)
        tlm.add_signal("nis_attitude", lambda: _nis(self.attitude_report))
        tlm.add_signal("nis_accel_cal", lambda: _nis(self.calibration_report))
        self.telemetry = tlm

    # =========================================================================
    # STEP
    # =========================================================================

    def step(self) -> None:
        """Execute one full estimation cycle and advance the truth by dt."""
        ctx = self.ctx
        dt = ctx.dt
        cfg = self.config

        # 1. PROPAGATE
        if ctx.k > 0:
            self.attitude.propagate(self.rate_estimate, dt)

        # 2. MEASURE
        truth_env = self.truth.environment(dt)
        x_truth = ATTITUDE_LAYOUT.zeros()
        x_truth[ATTITUDE_LAYOUT.gyro_bias] = self.truth.gyro_bias
        self.y_accel = self.accel_truth.get_noisy_output(x_truth, truth_env, self.rng)
        self.y_magn = self.magn_truth.get_noisy_output(x_truth, truth_env, self.rng)
        self.y_gyro = self.gyro_truth.get_noisy_output(x_truth, truth_env, self.rng)
        self.accel_model.add_measurement(self.y_accel)
        self.magn_model.add_measurement(self.y_magn)
        self.gyro_model.add_measurement(self.y_gyro)
        self.uncal_accel_model.add_measurement(self.y_accel)

        # 3. ATTITUDE
        gyro_bias_before = self.attitude.gyro_bias
        if ctx.k == 0:
            self.rate_estimate = self.gyro_model.corrected_rate(gyro_bias_before)
        rotation_before = self.attitude.rotation
        env = ModelEnvironment(
            rotation=rotation_before,
            rate=self.rate_estimate,
            accel_bias=self.accel_cal_kf.get_state(),
            acceleration=self.acceleration_estimate,
            dt=dt,
        )
        self.attitude_report = self.attitude_kf.ekf_update(
            [self.accel_model, self.magn_model], env)

        # 4. CORRECT
        self.attitude.apply_correction()

        # 5. RATE
        if cfg.attitude_filter.gyro_bias_timing == "pre_update":
            gyro_bias = gyro_bias_before
        else:
            gyro_bias = self.attitude.gyro_bias
        self.rate_estimate = self.gyro_model.corrected_rate(gyro_bias)

        # 6. CALIBRATE
        if cfg.calibration_filter.linearization == "pre_correction":
            rotation = rotation_before
        else:
            rotation = self.attitude.rotation
        cal_env = env.with_updates(rotation=rotation)
        self.calibration_report = self.accel_cal_kf.ekf_update(
            [self.uncal_accel_model], cal_env)

        # 7. LOG
        self.last_attitude_error = self.attitude_error()
        self.telemetry.log_signals()
        self.truth.advance(ctx)
        ctx.advance()

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, duration: Optional[float] = None,
            progress: Optional[ProgressCallback] = None) -> pd.DataFrame:
        """
        Run the simulation loop for the given duration.

        Parameters
        ----------
        duration : float, optional
            Simulated time (s). Defaults to config.time.duration.
        progress : callable, optional
            Called as progress(ctx, sim) before the step at every
            config.time.print_interval of simulated time.

        Returns
        -------
        pd.DataFrame
            Complete telemetry record for the run.
        """
        if duration is None:
            duration = self.config.time.duration
        dt = self.ctx.dt
        n_steps = int(round(duration / dt))
        print_every = max(1, int(round(self.config.time.print_interval / dt)))

        logger.info("Simulation run started.  Duration: %.2f s (%d steps)",
                    duration, n_steps)
        wall_start = time.time()

        self.telemetry.create_log_header()
        for _ in range(n_steps):
            if progress is not None and self.ctx.k % print_every == 0:
                progress(self.ctx, self)
            self.step()

        df = self.telemetry.end_logging()
        logger.info(
            "Simulation run finished.  %d steps in %.2f s wall time.  "
            "Final attitude error %.4f deg",
            n_steps, time.time() - wall_start, self.last_attitude_error * RAD2DEG,
        )
        return df

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    def attitude_error(self) -> float:
        """Angle (rad) between the true and estimated rotations."""
        return rotation_angle_between(self.truth.rotation, self.attitude.rotation)

    @property
    def gyro_bias_estimate(self) -> np.ndarray:
        return self.attitude.gyro_bias

    @property
    def accel_bias_estimate(self) -> np.ndarray:
        return self.accel_cal_kf.get_state()

    def __repr__(self) -> str:
        return (f"AttitudeSimulation(t={self.ctx.t:.2f}, "
                f"records={len(self.telemetry)})")


def _nis(report: Optional[UpdateReport]) -> float:
    if report is None or not report.corrected:
        return float("nan")
    return report.nis
