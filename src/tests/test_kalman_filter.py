"""
===============================================================================
ATTITUDE EKF - Kalman Filter Engine Test Suite
===============================================================================
Tests for the generic EKF engine: construction checks, time update through
process models, stacked measurement updates, Joseph-form covariance health,
innovation consistency reporting, the singular-update policy and the
rollback of failed correct steps.
===============================================================================
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy import stats

from attitude_ekf.core.exceptions import (
    ConfigurationError,
    CovarianceError,
    DimensionError,
    InnovationCovarianceError,
    MeasurementError,
)
from attitude_ekf.core.rotation import rotate_vector, skew_symmetric
from attitude_ekf.navigation.environment import (
    ACCEL_BIAS_LAYOUT,
    ATTITUDE_LAYOUT,
    ModelEnvironment,
)
from attitude_ekf.navigation.kalman_filter import FilterConfig, KalmanFilter
from attitude_ekf.navigation.process_models import AttitudeDeviationModel, BiasModel
from attitude_ekf.navigation.sensors import (
    Accelerometer,
    AttitudeSensor,
    Magnetometer,
    UncalibratedAccelerometer,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def env():
    return ModelEnvironment(
        rotation=rotate_vector([0.2, 0.1, -0.4]),
        rate=np.array([0.3, -0.2, 0.5]),
        accel_bias=np.zeros(3),
        dt=0.01,
    )


@pytest.fixture
def attitude_kf():
    """Attitude/gyro-bias filter with both process models registered."""
    kf = KalmanFilter(ATTITUDE_LAYOUT.zeros(), 0.5 * np.eye(6), name="attitude")
    kf.add_models([
        AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation", 1e-4),
        BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6),
    ])
    return kf


@pytest.fixture
def accel_magn():
    return (Accelerometer(ATTITUDE_LAYOUT, "accel", 0.01),
            Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001))


def assert_symmetric_psd(P, tol=1e-12):
    assert_allclose(P, P.T, atol=tol)
    assert np.min(np.linalg.eigvalsh(P)) >= -tol


# =============================================================================
# Test: Construction
# =============================================================================

class TestConstruction:
    """Tests for filter construction and model registration."""

    def test_initial_state(self):
        kf = KalmanFilter(np.arange(3.0), np.eye(3), name="cal")
        assert_allclose(kf.get_state(), [0.0, 1.0, 2.0])
        assert_allclose(kf.P, np.eye(3))
        assert kf.state_size == 3

    def test_get_state_returns_copy(self):
        kf = KalmanFilter(np.zeros(3), np.eye(3))
        x = kf.get_state()
        x[0] = 5.0
        assert kf.get_state()[0] == 0.0

    def test_covariance_shape_mismatch(self):
        with pytest.raises(DimensionError):
            KalmanFilter(np.zeros(6), np.eye(3))

    def test_covariance_not_psd(self):
        with pytest.raises(CovarianceError):
            KalmanFilter(np.zeros(3), np.diag([1.0, -0.5, 1.0]))

    def test_covariance_not_symmetric(self):
        P0 = np.eye(3)
        P0[0, 2] = 0.3
        with pytest.raises(CovarianceError):
            KalmanFilter(np.zeros(3), P0)

    def test_overlapping_process_models(self):
        kf = KalmanFilter(np.zeros(6), np.eye(6))
        with pytest.raises(DimensionError):
            kf.add_models([BiasModel(ATTITUDE_LAYOUT, "a", 1e-6),
                           BiasModel(ATTITUDE_LAYOUT, "b", 1e-6)])

    def test_process_model_layout_mismatch(self):
        kf = KalmanFilter(np.zeros(3), np.eye(3))
        with pytest.raises(DimensionError):
            kf.add_models([BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6)])

    def test_add_models_replaces(self, attitude_kf):
        attitude_kf.add_models([BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6)])
        assert [m.name for m in attitude_kf.process_models] == ["gyro_bias"]

    def test_reset_components(self):
        kf = KalmanFilter(np.arange(6.0), np.eye(6))
        previous = kf.reset_components(slice(0, 3))
        assert_allclose(previous, [0.0, 1.0, 2.0])
        assert_allclose(kf.get_state(), [0.0, 0.0, 0.0, 3.0, 4.0, 5.0])


# =============================================================================
# Test: Empty model sets
# =============================================================================

class TestEmptyModelSets:
    """With no process or sensor models the filter must be a no-op."""

    def test_ekf_update_leaves_state_and_covariance(self, env):
        x0 = np.array([0.1, -0.2, 0.3])
        P0 = np.array([[0.5, 0.1, 0.0], [0.1, 0.4, 0.0], [0.0, 0.0, 0.2]])
        kf = KalmanFilter(x0, P0)
        report = kf.ekf_update([], env)
        assert_allclose(kf.get_state(), x0, atol=0.0)
        assert_allclose(kf.P, P0, atol=0.0)
        assert not report.corrected
        assert kf.get_residual().size == 0

    def test_predict_without_dt_needs_no_models(self):
        kf = KalmanFilter(np.zeros(3), np.eye(3))
        kf.predict(ModelEnvironment())
        assert_allclose(kf.P, np.eye(3), atol=0.0)


# =============================================================================
# Test: Time update
# =============================================================================

class TestPredict:
    """Tests for the process-model time update."""

    def test_state_and_covariance_propagation(self, env):
        x0 = np.array([0.1, 0.0, -0.05, 0.01, 0.02, 0.03])
        P0 = 0.5 * np.eye(6)
        kf = KalmanFilter(x0, P0)
        kf.add_models([
            AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation", 1e-4),
            BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6),
        ])
        kf.predict(env)

        dt = env.dt
        W = skew_symmetric(env.rate)
        A = np.zeros((6, 6))
        A[0:3, 0:3] = -W
        A[0:3, 3:6] = -np.eye(3)
        F = np.eye(6) + A * dt
        Q = np.diag([1e-4] * 3 + [1e-6] * 3) * dt

        expected_x = x0.copy()
        expected_x[0:3] += -W @ x0[0:3] * dt
        assert_allclose(kf.get_state(), expected_x, atol=1e-15)
        assert_allclose(kf.P, F @ P0 @ F.T + Q, atol=1e-14)

    def test_predict_grows_uncertainty(self, attitude_kf, env):
        trace_before = np.trace(attitude_kf.P)
        attitude_kf.predict(env)
        assert np.trace(attitude_kf.P) > trace_before

    def test_predict_needs_dt(self, attitude_kf):
        env = ModelEnvironment(rate=np.zeros(3))
        with pytest.raises(ConfigurationError, match="dt"):
            attitude_kf.predict(env)


# =============================================================================
# Test: Measurement update
# =============================================================================

class TestCorrect:
    """Tests for the stacked measurement update."""

    def test_zero_innovation_gives_zero_correction(self, env, accel_magn):
        x0 = np.array([0.0, 0.0, 0.0, 0.01, -0.02, 0.005])
        kf = KalmanFilter(x0, 0.5 * np.eye(6))
        kf.add_models([
            AttitudeDeviationModel(ATTITUDE_LAYOUT, "deviation", 1e-4),
            BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6),
        ])
        for sensor in accel_magn:
            sensor.add_measurement(sensor.get_output(x0, env))

        report = kf.ekf_update(list(accel_magn), env)
        assert report.corrected
        assert_allclose(report.residual, np.zeros(6), atol=1e-12)
        assert_allclose(kf.get_state(), x0, atol=1e-12)

    def test_zero_variance_identity_sensor_reaches_measurement(self, env):
        kf = KalmanFilter(ATTITUDE_LAYOUT.zeros(), np.eye(6))
        sensor = AttitudeSensor(ATTITUDE_LAYOUT, "star_tracker", np.zeros((3, 3)))
        offset = np.array([0.02, -0.01, 0.03])
        sensor.add_measurement(env.rotation @ rotate_vector(offset))

        kf.correct([sensor], env)
        assert_allclose(kf.get_state()[0:3], offset, atol=1e-12)
        assert_allclose(kf.P[0:3, 0:3], np.zeros((3, 3)), atol=1e-12)

    def test_zero_variance_bias_sensor_reaches_measurement(self, env):
        kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), 0.5 * np.eye(3))
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel",
                                           np.zeros((3, 3)))
        bias = np.array([0.3, -0.1, 0.2])
        sensor.add_measurement(sensor.get_output(bias, env))

        kf.ekf_update([sensor], env)
        assert_allclose(kf.get_state(), bias, atol=1e-12)

    def test_update_reduces_covariance(self, attitude_kf, env, accel_magn):
        for sensor in accel_magn:
            sensor.add_measurement(sensor.get_output(ATTITUDE_LAYOUT.zeros(), env))
        attitude_kf.predict(env)
        trace_before = np.trace(attitude_kf.P)
        attitude_kf.correct(list(accel_magn), env)
        assert np.trace(attitude_kf.P) < trace_before

    def test_residual_retained(self, env):
        kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), np.eye(3))
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 0.01)
        expected = sensor.get_output(ACCEL_BIAS_LAYOUT.zeros(), env)
        sensor.add_measurement(expected + np.array([0.1, 0.0, -0.1]))

        kf.correct([sensor], env)
        assert_allclose(kf.get_residual(), [0.1, 0.0, -0.1], atol=1e-12)

    def test_sensor_layout_mismatch(self, attitude_kf, env):
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 0.01)
        sensor.add_measurement(np.zeros(3))
        P_before = attitude_kf.P
        with pytest.raises(DimensionError):
            attitude_kf.correct([sensor], env)
        assert_allclose(attitude_kf.P, P_before, atol=0.0)

    def test_sensor_without_measurement(self, attitude_kf, env):
        with pytest.raises(ConfigurationError):
            attitude_kf.correct([Magnetometer(ATTITUDE_LAYOUT, "magn", 0.001)], env)


# =============================================================================
# Test: Covariance health over many steps
# =============================================================================

class TestCovarianceHealth:
    """P must stay symmetric positive-semi-definite through long runs."""

    def test_long_run_symmetric_psd(self, attitude_kf, env, accel_magn):
        rng = np.random.default_rng(99)
        for _ in range(500):
            for sensor in accel_magn:
                sensor.add_measurement(
                    sensor.get_noisy_output(ATTITUDE_LAYOUT.zeros(), env, rng))
            attitude_kf.ekf_update(list(accel_magn), env)
            attitude_kf.reset_components(ATTITUDE_LAYOUT.attitude)
            assert_symmetric_psd(attitude_kf.P)

    def test_steady_state_bounded(self, attitude_kf, env, accel_magn):
        for _ in range(300):
            for sensor in accel_magn:
                sensor.add_measurement(sensor.get_output(ATTITUDE_LAYOUT.zeros(), env))
            attitude_kf.ekf_update(list(accel_magn), env)
        assert np.all(np.diag(attitude_kf.P)[0:3] < 0.01)


# =============================================================================
# Test: Innovation consistency
# =============================================================================

class TestUpdateReport:
    """Tests for the NIS and chi-square consistency flag."""

    def test_nis_and_threshold(self, attitude_kf, env, accel_magn):
        for sensor in accel_magn:
            sensor.add_measurement(sensor.get_output(ATTITUDE_LAYOUT.zeros(), env)
                                   + 0.01)
        report = attitude_kf.ekf_update(list(accel_magn), env)

        S = report.innovation_covariance
        y = report.residual
        assert report.sensors == ["accel", "magn"]
        assert report.nis == pytest.approx(float(y @ np.linalg.solve(S, y)))
        assert report.nis_threshold == pytest.approx(stats.chi2.ppf(0.999, df=6))
        assert report.consistent

    def test_large_innovation_flagged(self, env):
        kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), 1e-6 * np.eye(3))
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 1e-4)
        sensor.add_measurement(sensor.get_output(ACCEL_BIAS_LAYOUT.zeros(), env) + 5.0)
        report = kf.correct([sensor], env)
        assert report.corrected
        assert not report.consistent

    def test_last_report_kept(self, attitude_kf, env, accel_magn):
        for sensor in accel_magn:
            sensor.add_measurement(sensor.get_output(ATTITUDE_LAYOUT.zeros(), env))
        report = attitude_kf.ekf_update(list(accel_magn), env)
        assert attitude_kf.last_report is report


# =============================================================================
# Test: Singular innovation covariance
# =============================================================================

class TestSingularUpdates:
    """An ill-conditioned S either raises or degrades to predict-only."""

    @pytest.fixture
    def singular_magn(self):
        # Noise-free magnetometer only observes two attitude axes
        magn = Magnetometer(ATTITUDE_LAYOUT, "magn", np.zeros((3, 3)))
        magn.add_measurement([1.0, 0.0, 0.0])
        return magn

    @pytest.fixture
    def level_env(self):
        return ModelEnvironment(rotation=np.eye(3), rate=np.zeros(3), dt=0.01)

    def test_raises_by_default(self, attitude_kf, singular_magn, level_env):
        with pytest.raises(InnovationCovarianceError) as excinfo:
            attitude_kf.ekf_update([singular_magn], level_env)
        assert excinfo.value.condition_number > 1e12

    def test_skip_degrades_to_predict(self, singular_magn, level_env):
        config = FilterConfig(skip_singular_updates=True)
        kf = KalmanFilter(ATTITUDE_LAYOUT.zeros(), 0.5 * np.eye(6), "attitude", config)
        kf.add_models([BiasModel(ATTITUDE_LAYOUT, "gyro_bias", 1e-6)])

        report = kf.ekf_update([singular_magn], level_env)
        assert not report.corrected
        assert "ill-conditioned" in report.reason
        assert kf.get_residual().size == 0

        expected_P = 0.5 * np.eye(6)
        expected_P[3:6, 3:6] += 1e-6 * level_env.dt * np.eye(3)
        assert_allclose(kf.P, expected_P, atol=1e-15)

    def test_from_dict(self):
        config = FilterConfig.from_dict({'skip_singular_updates': True,
                                         'max_condition_number': 1e8})
        assert config.skip_singular_updates
        assert config.max_condition_number == 1e8
        assert config.psd_tolerance == pytest.approx(1e-9)


# =============================================================================
# Test: Failed correct steps
# =============================================================================

class TestFailedCorrect:
    """A correct step that fails a numeric check must not touch x or P."""

    @pytest.fixture
    def cal_kf(self):
        return KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), np.eye(3), name="accel_cal")

    @pytest.fixture
    def offset_sensor(self, env):
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 0.02)
        sensor.add_measurement(sensor.get_output(ACCEL_BIAS_LAYOUT.zeros(), env) + 1.0)
        return sensor

    def test_non_finite_residual_raises(self, cal_kf, env):
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 0.02)
        sensor.add_measurement([0.0, 0.0, 9.81])
        bad_env = env.with_updates(acceleration=np.array([np.nan, 0.0, 0.0]))

        with pytest.raises(MeasurementError):
            cal_kf.ekf_update([sensor], bad_env)
        assert_allclose(cal_kf.get_state(), np.zeros(3), atol=0.0)
        assert_allclose(cal_kf.P, np.eye(3), atol=0.0)

    def test_covariance_failure_leaves_state(self, cal_kf, offset_sensor, env):
        cal_kf.config.psd_tolerance = -1.0
        with pytest.raises(CovarianceError):
            cal_kf.correct([offset_sensor], env)

        assert_allclose(cal_kf.get_state(), np.zeros(3), atol=0.0)
        assert_allclose(cal_kf.P, np.eye(3), atol=0.0)
        assert cal_kf.get_residual().size == 0
        assert cal_kf.last_report is None

    def test_state_moves_when_checks_pass(self, cal_kf, offset_sensor, env):
        cal_kf.correct([offset_sensor], env)
        assert_allclose(cal_kf.get_state(), np.full(3, 1.0 / 1.02), atol=1e-12)

    def test_skip_policy_covers_covariance_failure(self, offset_sensor, env):
        config = FilterConfig(skip_singular_updates=True)
        kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), np.eye(3), "accel_cal", config)
        kf.config.psd_tolerance = -1.0

        report = kf.ekf_update([offset_sensor], env)
        assert not report.corrected
        assert report.reason
        assert_allclose(kf.get_state(), np.zeros(3), atol=0.0)
        assert_allclose(kf.P, np.eye(3), atol=0.0)

    def test_skip_policy_covers_non_finite_residual(self, env):
        config = FilterConfig(skip_singular_updates=True)
        kf = KalmanFilter(ACCEL_BIAS_LAYOUT.zeros(), np.eye(3), "accel_cal", config)
        sensor = UncalibratedAccelerometer(ACCEL_BIAS_LAYOUT, "uncal_accel", 0.02)
        sensor.add_measurement([0.0, 0.0, 9.81])
        bad_env = env.with_updates(acceleration=np.array([0.0, np.nan, 0.0]))

        report = kf.ekf_update([sensor], bad_env)
        assert not report.corrected
        assert "not finite" in report.reason
        assert_allclose(kf.get_state(), np.zeros(3), atol=0.0)
