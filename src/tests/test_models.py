"""
===============================================================================
ATTITUDE EKF - Model Layer Test Suite
===============================================================================
Tests for the state layouts, the environment snapshot, the noise sampler and
every sensor and process model: expected outputs, analytic Jacobians checked
against central differences, and fail-fast configuration errors.
===============================================================================
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from attitude_ekf.core.constants import STANDARD_GRAVITY
from attitude_ekf.core.exceptions import ConfigurationError, DimensionError, MeasurementError
from attitude_ekf.core.rotation import rotate_vector, rotation_log
from attitude_ekf.navigation.environment import (
    ACCEL_BIAS_LAYOUT,
    ATTITUDE_LAYOUT,
    ModelEnvironment,
    StateLayout,
)
from attitude_ekf.navigation.process_models import AttitudeDeviationModel, BiasModel
from attitude_ekf.navigation.sensors import (
    Accelerometer,
    AttitudeSensor,
    Gyroscope,
    Magnetometer,
    UncalibratedAccelerometer,
)
from attitude_ekf.simulation.noise import NormalRandomVariable, sample_mvn


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def env():
    """Environment at a generic attitude with non-zero rate and biases."""
    return ModelEnvironment(
        rotation=rotate_vector([0.3, -0.7, 1.1]),
        rate=np.array([0.2, -0.1, 0.4]),
        gyro_bias=np.array([0.01, 0.02, -0.03]),
        accel_bias=np.array([0.05, -0.02, 0.1]),
        acceleration=np.array([0.3, 0.1, -0.2]),
        dt=0.01,
    )


@pytest.fixture
def x_attitude():
    """Attitude-filter state at zero deviation with a non-zero bias."""
    x = ATTITUDE_LAYOUT.zeros()
    x[ATTITUDE_LAYOUT.gyro_bias] = [0.01, -0.02, 0.005]
    return x


# =============================================================================
# Test: State layouts and environment
# =============================================================================

class TestStateLayout:
    """Tests for StateLayout validation."""

    def test_canonical_layouts(self):
        assert ATTITUDE_LAYOUT.size == 6
        assert ACCEL_BIAS_LAYOUT.size == 3
        assert ACCEL_BIAS_LAYOUT.attitude is None

    def test_overlapping_slots_rejected(self):
        with pytest.raises(DimensionError):
            StateLayout(size=6, attitude=slice(0, 3), gyro_bias=slice(2, 5))

    def test_slot_outside_state_rejected(self):
        with pytest.raises(DimensionError):
            StateLayout(size=3, attitude=slice(0, 3), gyro_bias=slice(3, 6))

    def test_slot_wrong_length_rejected(self):
        with pytest.raises(DimensionError):
            StateLayout(size=4, attitude=slice(0, 4))


class TestModelEnvironment:
    """Tests for the read-only snapshot."""

    def test_arrays_are_read_only_copies(self):
        rate = np.array([1.0, 2.0, 3.0])
        env = ModelEnvironment(rate=rate)
        rate[0] = 99.0
        assert env.rate[0] == 1.0
        with pytest.raises(ValueError):
            env.rate[0] = 5.0

    def test_non_positive_dt_rejected(self):
        with pytest.raises(ConfigurationError):
            ModelEnvironment(dt=0.0)

    def test_wrong_shape_rejected(self):
        with pytest.raises(DimensionError):
            ModelEnvironment(rotation=np.eye(2))

    def test_require_missing_field(self):
        with pytest.raises(ConfigurationError, match="rotation"):
            ModelEnvironment().require("rotation", "accel")

    def test_with_updates(self, env):
        updated = env.with_updates(rate=np.zeros(3))
        assert_allclose(updated.rate, np.zeros(3))
        assert_allclose(updated.rotation, env.rotation)


# =============================================================================
# Test: Noise sampling
# =============================================================================

class TestNoise:
    """Tests for the multivariate normal sampler."""

    def test_zero_covariance_gives_zero(self):
        assert_allclose(sample_mvn(np.zeros((3, 3))), np.zeros(3), atol=0.0)

    def test_seeded_draws_reproducible(self):
        cov = np.diag([1.0, 2.0, 3.0])
        a = sample_mvn(cov, np.random.default_rng(5))
        b = sample_mvn(cov, np.random.default_rng(5))
        assert_allclose(a, b, atol=0.0)

    def test_sample_covariance(self):
        cov = np.array([[2.0, 0.5, 0.0], [0.5, 1.0, 0.0], [0.0, 0.0, 0.1]])
        eta = NormalRandomVariable(cov, np.random.default_rng(11))
        samples = np.array([eta() for _ in range(50000)])
        assert_allclose(np.cov(samples.T), cov, atol=0.06)

    def test_non_square_rejected(self):
        with pytest.raises(ValueError):
            sample_mvn(np.zeros((3, 2)))


# =============================================================================
# Test: Model configuration
# =============================================================================

class TestModelConfiguration:
    """Tests for names, variances and fail-fast errors shared by all models."""

    def test_default_name_and_rename(self):
        magn = Magnetometer(ATTITUDE_LAYOUT)
        assert magn.name == "magnetometer"
        magn.set_model_name("magn")
        assert magn.name == "magn"

    def test_scalar_variance_broadcast(self):
        accel = Accelerometer(ATTITUDE_LAYOUT, variance=0.01)
        assert_allclose(accel.variance, 0.01 * np.eye(3))

    def test_missing_variance(self, env, x_attitude):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn")
        with pytest.raises(ConfigurationError, match="covariance"):
            magn.evaluate(x_attitude, env)

    def test_variance_wrong_shape(self):
        with pytest.raises(DimensionError):
            Magnetometer(ATTITUDE_LAYOUT, variance=np.eye(2))

    def test_variance_not_psd(self):
        with pytest.raises(ConfigurationError):
            Magnetometer(ATTITUDE_LAYOUT, variance=np.diag([1.0, -1.0, 1.0]))

    def test_variance_not_symmetric(self):
        bad = np.eye(3)
        bad[0, 1] = 0.5
        with pytest.raises(ConfigurationError):
            Magnetometer(ATTITUDE_LAYOUT, variance=bad)

    def test_missing_environment_field(self, x_attitude):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        with pytest.raises(ConfigurationError, match="rotation"):
            magn.evaluate(x_attitude, ModelEnvironment())

    def test_wrong_state_size(self, env):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        with pytest.raises(DimensionError):
            magn.evaluate(np.zeros(4), env)

    def test_measurement_wrong_length(self):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        with pytest.raises(DimensionError):
            magn.add_measurement(np.zeros(2))

    def test_measurement_missing(self, env):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        assert magn.measurement is None
        with pytest.raises(ConfigurationError):
            magn.measurement_vector(env)

    def test_zero_magnetic_field_rejected(self):
        with pytest.raises(ConfigurationError):
            Magnetometer(ATTITUDE_LAYOUT, field=np.zeros(3))

    def test_uncalibrated_accel_needs_bias_slot(self):
        with pytest.raises(ConfigurationError, match="accel_bias"):
            UncalibratedAccelerometer(ATTITUDE_LAYOUT, variance=0.01)

    def test_bias_model_rejects_attitude_slot(self):
        with pytest.raises(ConfigurationError):
            BiasModel(ATTITUDE_LAYOUT, slot="attitude")


# =============================================================================
# Test: Sensor outputs
# =============================================================================

class TestSensorOutputs:
    """Tests for the expected measurements of each sensor."""

    def test_level_accelerometer_reads_gravity(self):
        accel = Accelerometer(ATTITUDE_LAYOUT, "accel", 0.01)
        env = ModelEnvironment(rotation=np.eye(3), accel_bias=np.zeros(3))
        y = accel.get_output(ATTITUDE_LAYOUT.zeros(), env)
        assert_allclose(y, [0.0, 0.0, STANDARD_GRAVITY], atol=1e-12)

    def test_accelerometer_adds_bias(self, env, x_attitude):
        accel = Accelerometer(ATTITUDE_LAYOUT, "accel", 0.01)
        f_n = env.acceleration - accel.gravity
        expected = env.rotation.T @ f_n + env.accel_bias
        assert_allclose(accel.get_output(x_attitude, env), expected, atol=1e-12)

    def test_magnetometer_in_body_frame(self, env, x_attitude):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        expected = env.rotation.T @ np.array([1.0, 0.0, 0.0])
        assert_allclose(magn.get_output(x_attitude, env), expected, atol=1e-12)

    def test_gyroscope_reads_bias_from_state(self, env, x_attitude):
        gyro = Gyroscope(ATTITUDE_LAYOUT, "gyro", 1e-4)
        expected = env.rate + x_attitude[ATTITUDE_LAYOUT.gyro_bias]
        assert_allclose(gyro.get_output(x_attitude, env), expected, atol=1e-15)

    def test_gyroscope_reads_bias_from_environment(self, env):
        gyro = Gyroscope(ACCEL_BIAS_LAYOUT, "gyro", 1e-4)
        expected = env.rate + env.gyro_bias
        assert_allclose(gyro.get_output(ACCEL_BIAS_LAYOUT.zeros(), env), expected,
                        atol=1e-15)

    def test_corrected_rate(self):
        gyro = Gyroscope(ATTITUDE_LAYOUT, "gyro", 1e-4)
        gyro.add_measurement([0.1, 0.2, 0.3])
        assert_allclose(gyro.corrected_rate([0.01, 0.02, 0.03]), [0.09, 0.18, 0.27])

    def test_corrected_rate_needs_measurement(self):
        gyro = Gyroscope(ATTITUDE_LAYOUT, "gyro", 1e-4)
        with pytest.raises(ConfigurationError):
            gyro.corrected_rate(np.zeros(3))

    def test_noise_free_truth_sensor(self, env, x_attitude):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", np.zeros((3, 3)))
        assert_allclose(magn.get_noisy_output(x_attitude, env),
                        magn.get_output(x_attitude, env), atol=0.0)

    def test_attitude_sensor_measurement_in_tangent_space(self, env):
        sensor = AttitudeSensor(ATTITUDE_LAYOUT, "star_tracker", 1e-6)
        offset = np.array([0.01, -0.02, 0.03])
        sensor.add_measurement(env.rotation @ rotate_vector(offset))
        assert_allclose(sensor.measurement_vector(env), offset, atol=1e-12)

    def test_attitude_sensor_rejects_non_rotation(self):
        sensor = AttitudeSensor(ATTITUDE_LAYOUT, "star_tracker", 1e-6)
        with pytest.raises(MeasurementError):
            sensor.add_measurement(2.0 * np.eye(3))

    def test_attitude_sensor_rejects_nan(self):
        sensor = AttitudeSensor(ATTITUDE_LAYOUT, "star_tracker", 1e-6)
        R = np.eye(3)
        R[0, 0] = np.nan
        with pytest.raises(MeasurementError):
            sensor.add_measurement(R)
        assert sensor.measurement is None

    @pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
    def test_non_finite_measurement_rejected(self, bad):
        sensor = Accelerometer(ATTITUDE_LAYOUT, "accel", 0.01)
        sensor.add_measurement([0.0, 0.0, STANDARD_GRAVITY])
        with pytest.raises(MeasurementError):
            sensor.add_measurement([bad, 0.0, STANDARD_GRAVITY])
        assert_allclose(sensor.measurement, [0.0, 0.0, STANDARD_GRAVITY])

    def test_attitude_sensor_noisy_output(self, env):
        sensor = AttitudeSensor(ATTITUDE_LAYOUT, "star_tracker", 1e-6)
        R = sensor.get_noisy_output(ATTITUDE_LAYOUT.zeros(), env,
                                    np.random.default_rng(3))
        error = rotation_log(env.rotation.T @ R)
        assert np.linalg.norm(error) < 1e-2


# =============================================================================
# Test: Analytic Jacobians
# =============================================================================

class TestJacobians:
    """Analytic Jacobians must match central differences."""

    @pytest.mark.parametrize("model_cls", [Accelerometer, Magnetometer,
                                           Gyroscope, AttitudeSensor])
    def test_attitude_layout_sensors(self, model_cls, env, x_attitude):
        model = model_cls(ATTITUDE_LAYOUT, variance=0.01)
        assert_allclose(model.jacobian(x_attitude, env),
                        model.numerical_jacobian(x_attitude, env), atol=1e-6)

    def test_uncalibrated_accelerometer(self, env):
        model = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, variance=0.01)
        x = np.array([0.1, -0.2, 0.05])
        assert_allclose(model.jacobian(x, env), model.numerical_jacobian(x, env),
                        atol=1e-6)
        assert_allclose(model.jacobian(x, env), np.eye(3))

    def test_accelerometer_bias_columns(self, env):
        layout = StateLayout(size=9, attitude=slice(0, 3), gyro_bias=slice(3, 6),
                             accel_bias=slice(6, 9))
        model = Accelerometer(layout, variance=0.01)
        x = layout.zeros()
        H = model.jacobian(x, env)
        assert_allclose(H, model.numerical_jacobian(x, env), atol=1e-6)
        assert_allclose(H[:, 6:9], np.eye(3))

    def test_deviation_model_attitude_block(self, env):
        model = AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation", 1e-4)
        x = ATTITUDE_LAYOUT.zeros()
        x[0:3] = [0.01, 0.02, -0.01]
        A = model.jacobian(x, env)
        assert_allclose(A[:, 0:3], model.numerical_jacobian(x, env)[:, 0:3], atol=1e-8)
        assert_allclose(A[:, 3:6], -np.eye(3))

    def test_deviation_model_derivative(self, env):
        model = AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation", 1e-4)
        x = ATTITUDE_LAYOUT.zeros()
        x[0:3] = [0.01, 0.02, -0.01]
        assert_allclose(model.run_model(x, env), -np.cross(env.rate, x[0:3]), atol=1e-15)
        assert model.state_slice == ATTITUDE_LAYOUT.attitude

    def test_bias_model_is_static(self, env, x_attitude):
        model = BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6)
        out = model.evaluate(x_attitude, env)
        assert_allclose(out.output, np.zeros(3), atol=0.0)
        assert_allclose(out.jacobian, np.zeros((3, 6)), atol=0.0)
        assert model.state_slice == ATTITUDE_LAYOUT.gyro_bias

    def test_evaluate_bundles_variance(self, env, x_attitude):
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)
        out = magn.evaluate(x_attitude, env)
        assert out.name == "magn"
        assert out.jacobian.shape == (3, 6)
        assert_allclose(out.variance, 0.001 * np.eye(3))
