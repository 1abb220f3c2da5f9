"""
===============================================================================
ATTITUDE EKF - Simulation Configuration
===============================================================================
Loads the YAML configuration, merges it over the packaged defaults and
builds typed settings for the simulation.

Usage:
    from attitude_ekf.simulation.config import SimulationConfig, load_config

    cfg = SimulationConfig.from_dict(load_config("my_run.yaml"))
    cfg.time.duration = 2.0

Variance entries accept a scalar (multiple of I), a 3-vector (diagonal) or a
full 3x3 matrix.
===============================================================================
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import yaml

from attitude_ekf.core.constants import DEFAULT_DT, DEFAULT_DURATION
from attitude_ekf.core.exceptions import ConfigurationError
from attitude_ekf.navigation.kalman_filter import FilterConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default_config.yaml"

GYRO_BIAS_TIMINGS = ("pre_update", "post_update")
CALIBRATION_LINEARIZATIONS = ("pre_correction", "post_correction")


# =============================================================================
# LOADING
# =============================================================================

def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must hold a mapping")
    return data


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load the simulation configuration.

    Args:
        config_path: YAML file whose entries override the packaged defaults.
            None returns the defaults.

    Returns:
        Nested configuration dictionary.
    """
    config = _read_yaml(DEFAULT_CONFIG_PATH)
    if config_path is not None:
        logger.info("Loading configuration from: %s", config_path)
        config = _merge(config, _read_yaml(config_path))
    return config


# =============================================================================
# TYPED SETTINGS
# =============================================================================

def covariance3(value: Any, name: str) -> np.ndarray:
    """Convert a scalar, 3-vector or 3x3 entry into a 3x3 covariance."""
    arr = np.asarray(value, dtype=np.float64)
    if arr.ndim == 0:
        cov = float(arr) * np.eye(3)
    elif arr.shape == (3,):
        cov = np.diag(arr)
    elif arr.shape == (3, 3):
        cov = arr.copy()
    else:
        raise ConfigurationError(f"{name} must be a scalar, 3-vector or 3x3, got shape {arr.shape}")
    if np.any(np.diag(cov) < 0.0):
        raise ConfigurationError(f"{name} has negative variances")
    return cov


def _vector3(value: Any, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise ConfigurationError(f"{name} must have 3 elements, got {arr.size}")
    return arr


def _check_keys(section: Dict[str, Any], allowed, name: str) -> None:
    unknown = set(section) - set(allowed)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}': {sorted(unknown)}")


@dataclass
class TimeConfig:
    dt: float = DEFAULT_DT
    duration: float = DEFAULT_DURATION
    seed: Optional[int] = None
    print_interval: float = 1.0


@dataclass
class TruthConfig:
    frequency: np.ndarray = field(default_factory=lambda: np.array([0.05, 0.10, 0.15]))
    phase_deg: np.ndarray = field(default_factory=lambda: np.array([0.0, 45.0, 90.0]))
    constant_rate: Optional[np.ndarray] = None
    acceleration: np.ndarray = field(default_factory=lambda: np.zeros(3))
    initial_attitude_error_variance: np.ndarray = field(default_factory=lambda: 0.5 * np.eye(3))
    gyro_bias_variance: np.ndarray = field(default_factory=lambda: 0.1 * np.eye(3))
    accel_bias_variance: np.ndarray = field(default_factory=lambda: 0.5 * np.eye(3))
    sensor_noise: bool = True


@dataclass
class SensorConfig:
    accel_variance: np.ndarray = field(default_factory=lambda: 0.01 * np.eye(3))
    magn_variance: np.ndarray = field(default_factory=lambda: 0.001 * np.eye(3))
    gyro_variance: np.ndarray = field(default_factory=lambda: 1.0e-4 * np.eye(3))
    gravity: float = 9.81
    magnetic_field: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))


@dataclass
class AttitudeFilterSettings:
    initial_covariance: np.ndarray = field(default_factory=lambda: 0.5 * np.eye(6))
    gyro_bias_random_walk: np.ndarray = field(default_factory=lambda: 1.0e-6 * np.eye(3))
    attitude_process_noise: Optional[np.ndarray] = None
    gyro_bias_timing: str = "post_update"


@dataclass
class CalibrationFilterSettings:
    initial_covariance: np.ndarray = field(default_factory=lambda: 0.5 * np.eye(3))
    linearization: str = "post_correction"


@dataclass
class TelemetryConfig:
    path: Optional[str] = None
    plot_path: Optional[str] = None


@dataclass
class SimulationConfig:
    """
    Complete typed configuration of one simulation run.

    Build it from a nested dictionary with from_dict(); the default
    constructor gives the packaged defaults without reading YAML and with
    the CSV output disabled.
    """

    time: TimeConfig = field(default_factory=TimeConfig)
    truth: TruthConfig = field(default_factory=TruthConfig)
    sensors: SensorConfig = field(default_factory=SensorConfig)
    attitude_filter: AttitudeFilterSettings = field(default_factory=AttitudeFilterSettings)
    calibration_filter: CalibrationFilterSettings = field(
        default_factory=CalibrationFilterSettings)
    numerics: FilterConfig = field(default_factory=FilterConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if any setting is out of range."""
        if not self.time.dt > 0.0:
            raise ConfigurationError(f"simulation.dt must be positive, got {self.time.dt}")
        if self.time.duration < 0.0:
            raise ConfigurationError(
                f"simulation.duration must be non-negative, got {self.time.duration}")
        if self.attitude_filter.gyro_bias_timing not in GYRO_BIAS_TIMINGS:
            raise ConfigurationError(
                f"attitude_filter.gyro_bias_timing must be one of {GYRO_BIAS_TIMINGS}, "
                f"got {self.attitude_filter.gyro_bias_timing!r}"
            )
        if self.calibration_filter.linearization not in CALIBRATION_LINEARIZATIONS:
            raise ConfigurationError(
                f"calibration_filter.linearization must be one of "
                f"{CALIBRATION_LINEARIZATIONS}, got {self.calibration_filter.linearization!r}"
            )
        if not 0.0 < self.numerics.nis_significance < 1.0:
            raise ConfigurationError("numerics.nis_significance must lie in (0, 1)")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SimulationConfig":
        """Build typed settings from a nested dictionary (see load_config)."""
        sections = ("simulation", "truth", "sensors", "attitude_filter",
                    "calibration_filter", "numerics", "telemetry")
        _check_keys(config, sections, "configuration")

        sim = config.get('simulation', {}) or {}
        _check_keys(sim, ("dt", "duration", "seed", "print_interval"), "simulation")
        time_cfg = TimeConfig(
            dt=float(sim.get('dt', DEFAULT_DT)),
            duration=float(sim.get('duration', DEFAULT_DURATION)),
            seed=None if sim.get('seed') is None else int(sim['seed']),
            print_interval=float(sim.get('print_interval', 1.0)),
        )

        truth = config.get('truth', {}) or {}
        _check_keys(truth, TruthConfig.__dataclass_fields__, "truth")
        defaults = TruthConfig()
        truth_cfg = TruthConfig(
            frequency=_vector3(truth.get('frequency', defaults.frequency), "truth.frequency"),
            phase_deg=_vector3(truth.get('phase_deg', defaults.phase_deg), "truth.phase_deg"),
            constant_rate=(None if truth.get('constant_rate') is None
                           else _vector3(truth['constant_rate'], "truth.constant_rate")),
            acceleration=_vector3(truth.get('acceleration', defaults.acceleration),
                                  "truth.acceleration"),
            initial_attitude_error_variance=covariance3(
                truth.get('initial_attitude_error_variance', 0.5),
                "truth.initial_attitude_error_variance"),
            gyro_bias_variance=covariance3(truth.get('gyro_bias_variance', 0.1),
                                           "truth.gyro_bias_variance"),
            accel_bias_variance=covariance3(truth.get('accel_bias_variance', 0.5),
                                            "truth.accel_bias_variance"),
            sensor_noise=bool(truth.get('sensor_noise', True)),
        )

        sensors = config.get('sensors', {}) or {}
        _check_keys(sensors, SensorConfig.__dataclass_fields__, "sensors")
        sensor_cfg = SensorConfig(
            accel_variance=covariance3(sensors.get('accel_variance', 0.01),
                                       "sensors.accel_variance"),
            magn_variance=covariance3(sensors.get('magn_variance', 0.001),
                                      "sensors.magn_variance"),
            gyro_variance=covariance3(sensors.get('gyro_variance', 1.0e-4),
                                      "sensors.gyro_variance"),
            gravity=float(sensors.get('gravity', 9.81)),
            magnetic_field=_vector3(sensors.get('magnetic_field', [1.0, 0.0, 0.0]),
                                    "sensors.magnetic_field"),
        )

        att = config.get('attitude_filter', {}) or {}
        _check_keys(att, AttitudeFilterSettings.__dataclass_fields__, "attitude_filter")
        P0 = np.asarray(att.get('initial_covariance', 0.5), dtype=np.float64)
        if P0.ndim == 0:
            P0 = float(P0) * np.eye(6)
        elif P0.shape == (6,):
            P0 = np.diag(P0)
        elif P0.shape != (6, 6):
            raise ConfigurationError(
                f"attitude_filter.initial_covariance must be a scalar, 6-vector or 6x6, "
                f"got shape {P0.shape}"
            )
        att_cfg = AttitudeFilterSettings(
            initial_covariance=P0,
            gyro_bias_random_walk=covariance3(att.get('gyro_bias_random_walk', 1.0e-6),
                                              "attitude_filter.gyro_bias_random_walk"),
            attitude_process_noise=(
                None if att.get('attitude_process_noise') is None
                else covariance3(att['attitude_process_noise'],
                                 "attitude_filter.attitude_process_noise")),
            gyro_bias_timing=str(att.get('gyro_bias_timing', "post_update")),
        )

        cal = config.get('calibration_filter', {}) or {}
        _check_keys(cal, CalibrationFilterSettings.__dataclass_fields__, "calibration_filter")
        cal_cfg = CalibrationFilterSettings(
            initial_covariance=covariance3(cal.get('initial_covariance', 0.5),
                                           "calibration_filter.initial_covariance"),
            linearization=str(cal.get('linearization', "post_correction")),
        )

        numerics = config.get('numerics', {}) or {}
        _check_keys(numerics, FilterConfig.__dataclass_fields__, "numerics")

        tlm = config.get('telemetry', {}) or {}
        _check_keys(tlm, TelemetryConfig.__dataclass_fields__, "telemetry")

        return cls(
            time=time_cfg,
            truth=truth_cfg,
            sensors=sensor_cfg,
            attitude_filter=att_cfg,
            calibration_filter=cal_cfg,
            numerics=FilterConfig.from_dict(numerics),
            telemetry=TelemetryConfig(path=tlm.get('path'), plot_path=tlm.get('plot_path')),
        )
