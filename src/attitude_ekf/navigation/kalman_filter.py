"""
===============================================================================
ATTITUDE EKF - Extended Kalman Filter Engine
===============================================================================

Generic EKF that owns one (state, covariance) pair and a list of process
models, and fuses any set of sensor models supplied per update call.

Time Update (predict)
---------------------
Each registered process model i owns a slot of the state and returns its
derivative f_i(x) and Jacobian rows A_i. They are summed into their slots:

    x-  = x + f(x) * dt
    F   = I + A * dt
    Q   = Q_c * dt            (each model's noise density on its slot)
    P-  = F P F^T + Q

Slots not driven by any model are constant with no process noise, so an
empty model set leaves x and P untouched.

Measurement Update (correct)
----------------------------
All sensors sampled at the same instant are stacked into one update at a
single linearization point:

    y   = [z_1; ...; z_k] - [h_1(x-); ...; h_k(x-)]
    H   = [H_1; ...; H_k]
    R   = blockdiag(R_1, ..., R_k)
    S   = H P- H^T + R
    K   = P- H^T S^-1
    x   = x- + K y

Joseph Form Covariance Update
-----------------------------
The short form P = (I - K H) P- drifts away from symmetric and can lose
positive-definiteness from roundoff over long runs. The Joseph form

    P = (I - K H) P- (I - K H)^T + K R K^T

is symmetric and PSD by construction; the result is re-symmetrized as a
final safeguard. The innovation covariance is checked for conditioning
before it is factored, and P is checked for symmetry and PSD after every
predict and correct. A step that fails any check leaves x and P as they
were before it.

References
----------
    [1] Brown & Hwang, "Introduction to Random Signals and Applied
        Kalman Filtering", 4th ed., Wiley, 2012.
    [2] Bar-Shalom, Li & Kirubarajan, "Estimation with Applications to
        Tracking and Navigation", Wiley, 2001, Ch. 5 (NIS consistency test).

===============================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats
from scipy.linalg import block_diag

from attitude_ekf.core.constants import (
    MAX_INNOVATION_CONDITION_NUMBER,
    NIS_SIGNIFICANCE,
    PSD_TOLERANCE,
)
from attitude_ekf.core.exceptions import (
    CovarianceError,
    DimensionError,
    InnovationCovarianceError,
    MeasurementError,
    NumericalError,
)
from attitude_ekf.navigation.environment import ModelEnvironment
from attitude_ekf.navigation.models import ProcessModel, SensorModel

logger = logging.getLogger(__name__)


@dataclass
class FilterConfig:
    """
    Numerical policy of a KalmanFilter.

    Attributes
    ----------
    max_condition_number : float
        Largest acceptable condition number of S before the correct step is
        refused.
    psd_tolerance : float
        Relative tolerance for the symmetry and eigenvalue checks on P.
    skip_singular_updates : bool
        If True, a correct step that fails a numeric check (ill-conditioned S,
        non-finite residual, non-PSD P) degrades the step to predict-only and
        logs a warning instead of raising.
    nis_significance : float
        Significance level of the chi-square consistency test on the NIS.
    """

    max_condition_number: float = MAX_INNOVATION_CONDITION_NUMBER
    psd_tolerance: float = PSD_TOLERANCE
    skip_singular_updates: bool = False
    nis_significance: float = NIS_SIGNIFICANCE

    @classmethod
    def from_dict(cls, config: dict) -> "FilterConfig":
        return cls(
            max_condition_number=float(config.get(
                'max_condition_number', MAX_INNOVATION_CONDITION_NUMBER)),
            psd_tolerance=float(config.get('psd_tolerance', PSD_TOLERANCE)),
            skip_singular_updates=bool(config.get('skip_singular_updates', False)),
            nis_significance=float(config.get('nis_significance', NIS_SIGNIFICANCE)),
        )


@dataclass
class UpdateReport:
    """
    Outcome of one ekf_update() / correct() call.

    Attributes
    ----------
    filter_name : str
        Name of the filter that produced the report.
    sensors : list of str
        Names of the sensor models fused, in stacking order.
    corrected : bool
        False when no sensors were supplied or the correct step was skipped.
    residual : np.ndarray
        Stacked innovation y = z - h(x-). Empty if not corrected.
    innovation_covariance : np.ndarray
        S = H P- H^T + R. Empty if not corrected.
    nis : float
        Normalized innovation squared y^T S^-1 y (nan if not corrected).
    nis_threshold : float
        Chi-square threshold for the NIS at the configured significance.
    reason : str
        Why the correct step did not run, if it did not.
    """

    filter_name: str
    sensors: List[str] = field(default_factory=list)
    corrected: bool = False
    residual: np.ndarray = field(default_factory=lambda: np.zeros(0))
    innovation_covariance: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    nis: float = float("nan")
    nis_threshold: float = float("nan")
    reason: str = ""

    @property
    def consistent(self) -> bool:
        """True if the NIS lies below its chi-square threshold."""
        return bool(self.corrected and self.nis <= self.nis_threshold)


class KalmanFilter:
    """
    Extended Kalman Filter built from pluggable process and sensor models.

    Parameters
    ----------
    x0 : np.ndarray
        Initial state vector (n,).
    P0 : np.ndarray
        Initial state error covariance (n, n). Must be symmetric PSD.
    name : str, optional
        Label used in logs and reports.
    config : FilterConfig, optional
        Numerical policy. Defaults to FilterConfig().

    Examples
    --------
    >>> kf = KalmanFilter(np.zeros(6), 0.5 * np.eye(6), name="attitude")
    >>> kf.add_models([deviation_model, gyro_bias_model])
    >>> report = kf.ekf_update([accel_model, magn_model], env)
    >>> x_hat = kf.get_state()
    """

    def __init__(self, x0: np.ndarray, P0: np.ndarray, name: str = "kf",
                 config: Optional[FilterConfig] = None) -> None:
        self.name = name
        self.config = config if config is not None else FilterConfig()

        self._x = np.array(x0, dtype=np.float64).reshape(-1)
        n = self._x.size
        if n == 0:
            raise DimensionError("State vector must not be empty")

        P0 = np.array(P0, dtype=np.float64)
        if P0.shape != (n, n):
            raise DimensionError(
                f"Covariance for filter '{name}' must be ({n}, {n}), got {P0.shape}"
            )
        self._P = self._checked_covariance(P0, "initialization")

        self._process_models: List[ProcessModel] = []
        self._residual = np.zeros(0)
        self.last_report: Optional[UpdateReport] = None

    # =========================================================================
    # STATE ACCESS
    # =========================================================================

    @property
    def state_size(self) -> int:
        return self._x.size

    @property
    def P(self) -> np.ndarray:
        """Current state error covariance (copy)."""
        return self._P.copy()

    def get_state(self) -> np.ndarray:
        """Return a copy of the current (corrected) state vector."""
        return self._x.copy()

    def get_covariance(self) -> np.ndarray:
        """Return a copy of the state error covariance."""
        return self._P.copy()

    def get_residual(self) -> np.ndarray:
        """Return the stacked innovation of the most recent correct step."""
        return self._residual.copy()

    def reset_components(self, slot: slice) -> np.ndarray:
        """
        Zero a sub-state in place and return the values it held.

        Used by the multiplicative attitude correction, which folds the
        deviation into the rotation estimate before resetting it.
        """
        start, stop, _ = slot.indices(self.state_size)
        if stop <= start:
            raise DimensionError(f"Slot {slot} is empty for a state of size {self.state_size}")
        previous = self._x[slot].copy()
        self._x[slot] = 0.0
        return previous

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def add_models(self, process_models: Sequence[ProcessModel]) -> None:
        """
        Register the process models of the time update.

        Replaces any prior registration. Each model's slot must lie inside
        the state and slots must not overlap.
        """
        taken = np.zeros(self.state_size, dtype=bool)
        for model in process_models:
            if model.layout.size != self.state_size:
                raise DimensionError(
                    f"Process model '{model.name}' has state size {model.layout.size}, "
                    f"filter '{self.name}' has {self.state_size}"
                )
            start, stop, _ = model.state_slice.indices(self.state_size)
            if stop - start != model.output_size:
                raise DimensionError(
                    f"Process model '{model.name}' slot {model.state_slice} does not "
                    f"match its output size {model.output_size}"
                )
            if taken[start:stop].any():
                raise DimensionError(
                    f"Process model '{model.name}' slot {model.state_slice} overlaps "
                    "another registered model"
                )
            taken[start:stop] = True

        self._process_models = list(process_models)
        logger.debug("Filter %s registered process models: %s", self.name,
                     [m.name for m in self._process_models])

    @property
    def process_models(self) -> List[ProcessModel]:
        return list(self._process_models)

    # =========================================================================
    # EKF CYCLE
    # =========================================================================

    def ekf_update(self, sensor_models: Sequence[SensorModel],
                   env: ModelEnvironment) -> UpdateReport:
        """
        Run one predict + correct cycle.

        Parameters
        ----------
        sensor_models : sequence of SensorModel
            Sensors sampled this step, each holding a fresh measurement.
            Sensors without a measurement this step must be left out.
        env : ModelEnvironment
            Snapshot of the linearization point quantities and dt.

        Returns
        -------
        UpdateReport
            Residual, innovation covariance and NIS of the correct step.

        Raises
        ------
        NumericalError
            If the correct step fails a numeric check and
            skip_singular_updates is False. The predicted state is kept.
        """
        self.predict(env)
        try:
            report = self.correct(sensor_models, env)
        except NumericalError as exc:
            if not self.config.skip_singular_updates:
                raise
            logger.warning("Filter %s skipped correct step: %s", self.name, exc)
            self._residual = np.zeros(0)
            report = UpdateReport(
                filter_name=self.name,
                sensors=[m.name for m in sensor_models],
                reason=str(exc),
            )
            self.last_report = report
        return report

    def predict(self, env: ModelEnvironment) -> None:
        """Propagate x and P through the registered process models."""
        if not self._process_models:
            return

        dt = float(env.require("dt", f"filter '{self.name}'"))
        n = self.state_size
        f = np.zeros(n)
        A = np.zeros((n, n))
        Q = np.zeros((n, n))

        for model in self._process_models:
            out = model.evaluate(self._x, env)
            slot = model.state_slice
            f[slot] += out.output
            A[slot, :] += out.jacobian
            Q[slot, slot] += out.variance

        F = np.eye(n) + A * dt
        P_pred = self._checked_covariance(F @ self._P @ F.T + Q * dt, "predict")
        self._x = self._x + f * dt
        self._P = P_pred

    def correct(self, sensor_models: Sequence[SensorModel],
                env: ModelEnvironment) -> UpdateReport:
        """
        Fuse all supplied sensors in one stacked measurement update.

        Raises
        ------
        DimensionError
            If any measurement, output, Jacobian or covariance sizes disagree.
        InnovationCovarianceError
            If S is not finite or its condition number exceeds the limit.
        MeasurementError
            If the stacked residual is not finite.
        CovarianceError
            If the updated P is not symmetric PSD. x and P are left untouched.
        """
        names = [m.name for m in sensor_models]
        if not sensor_models:
            self._residual = np.zeros(0)
            self.last_report = UpdateReport(filter_name=self.name, reason="no sensors")
            return self.last_report

        y, H, R = self._stack_measurements(sensor_models, env)
        m = y.size

        S = H @ self._P @ H.T + R
        S = 0.5 * (S + S.T)
        condition_number = self._condition_number(S)
        if not np.isfinite(condition_number) or condition_number > self.config.max_condition_number:
            raise InnovationCovarianceError(
                f"Filter '{self.name}' innovation covariance for {names} is "
                f"ill-conditioned (cond = {condition_number:.3e})",
                condition_number,
            )

        # K = P H^T S^-1, solved against S rather than inverting it
        PHt = self._P @ H.T
        K = np.linalg.solve(S, PHt.T).T

        x_new = self._x + K @ y
        I_KH = np.eye(self.state_size) - K @ H
        P_new = self._checked_covariance(I_KH @ self._P @ I_KH.T + K @ R @ K.T, "correct")

        self._x = x_new
        self._P = P_new
        self._residual = y
        nis = float(y @ np.linalg.solve(S, y))
        threshold = float(stats.chi2.ppf(1.0 - self.config.nis_significance, df=m))
        report = UpdateReport(
            filter_name=self.name,
            sensors=names,
            corrected=True,
            residual=y.copy(),
            innovation_covariance=S,
            nis=nis,
            nis_threshold=threshold,
        )
        self.last_report = report
        logger.debug("Filter %s corrected with %s: |y|=%.3e NIS=%.3f",
                     self.name, names, float(np.linalg.norm(y)), nis)
        return report

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _stack_measurements(self, sensor_models: Sequence[SensorModel],
                            env: ModelEnvironment
                            ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        n = self.state_size
        residuals, jacobians, variances = [], [], []

        for model in sensor_models:
            if model.layout.size != n:
                raise DimensionError(
                    f"Sensor model '{model.name}' has state size {model.layout.size}, "
                    f"filter '{self.name}' has {n}"
                )
            out = model.evaluate(self._x, env)
            z = np.asarray(model.measurement_vector(env), dtype=np.float64).reshape(-1)
            if z.shape != out.output.shape:
                raise DimensionError(
                    f"Sensor '{model.name}' measurement has {z.size} elements, "
                    f"expected output has {out.output.size}"
                )
            residuals.append(z - out.output)
            jacobians.append(out.jacobian)
            variances.append(out.variance)

        y = np.concatenate(residuals)
        H = np.vstack(jacobians)
        R = block_diag(*variances)
        m = y.size
        if H.shape != (m, n) or R.shape != (m, m):
            raise DimensionError(
                f"Stacked measurement for filter '{self.name}' is inconsistent: "
                f"y {y.shape}, H {H.shape}, R {R.shape}"
            )
        if not np.all(np.isfinite(y)):
            raise MeasurementError(
                f"Filter '{self.name}' residual for {[s.name for s in sensor_models]} "
                f"is not finite: {y}"
            )
        return y, H, R

    @staticmethod
    def _condition_number(S: np.ndarray) -> float:
        if not np.all(np.isfinite(S)):
            return float("inf")
        with np.errstate(divide='ignore', invalid='ignore'):
            condition_number = float(np.linalg.cond(S))
        return condition_number if np.isfinite(condition_number) else float("inf")

    def _checked_covariance(self, P: np.ndarray, stage: str) -> np.ndarray:
        """Verify P is symmetric PSD to tolerance and return it re-symmetrized."""
        if not np.all(np.isfinite(P)):
            raise CovarianceError(f"Filter '{self.name}' covariance is not finite after {stage}")

        scale = max(1.0, float(np.max(np.abs(P))))
        tolerance = self.config.psd_tolerance * scale
        asymmetry = float(np.max(np.abs(P - P.T)))
        if asymmetry > tolerance:
            raise CovarianceError(
                f"Filter '{self.name}' covariance lost symmetry after {stage} "
                f"(max |P - P^T| = {asymmetry:.3e})"
            )

        P = 0.5 * (P + P.T)
        min_eig = float(np.min(np.linalg.eigvalsh(P)))
        if min_eig < -tolerance:
            raise CovarianceError(
                f"Filter '{self.name}' covariance is not positive-semi-definite "
                f"after {stage} (min eigenvalue {min_eig:.3e})",
                min_eig,
            )
        return P

    def __repr__(self) -> str:
        return (f"KalmanFilter(name={self.name!r}, n={self.state_size}, "
                f"process_models={[m.name for m in self._process_models]})")
