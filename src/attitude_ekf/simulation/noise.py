"""
===============================================================================
ATTITUDE EKF - Noise Sampling
===============================================================================
Zero-mean multivariate normal draws used by truth sensor instances to
synthesize noisy measurements and by the simulation to draw initial biases
and the initial attitude error. The estimator itself never samples noise.

All draws come from a numpy Generator so runs are reproducible from a seed.
===============================================================================
"""

from typing import Optional

import numpy as np


def sample_mvn(covariance: np.ndarray,
               rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Draw one sample from N(0, covariance).

    A covariance of all zeros returns the zero vector without consuming
    random numbers, so noise-free runs are exactly deterministic.

    Parameters
    ----------
    covariance : np.ndarray
        Symmetric positive-semi-definite (n, n) matrix.
    rng : np.random.Generator, optional
        Random source. A fresh default generator is used if omitted.

    Returns
    -------
    np.ndarray
        (n,) sample.
    """
    covariance = np.atleast_2d(np.asarray(covariance, dtype=np.float64))
    if covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"Covariance must be square, got {covariance.shape}")

    n = covariance.shape[0]
    if not np.any(covariance):
        return np.zeros(n)

    if rng is None:
        rng = np.random.default_rng()
    return rng.multivariate_normal(np.zeros(n), covariance, method="eigh")


class NormalRandomVariable:
    """
    Callable zero-mean Gaussian with a fixed covariance.

    Parameters
    ----------
    covariance : np.ndarray
        (n, n) covariance matrix.
    rng : np.random.Generator, optional
        Random source shared with the rest of the simulation.

    Examples
    --------
    >>> eta = NormalRandomVariable(0.5 * np.eye(3), np.random.default_rng(0))
    >>> sample = eta()
    """

    def __init__(self, covariance: np.ndarray,
                 rng: Optional[np.random.Generator] = None) -> None:
        self.covariance = np.atleast_2d(np.asarray(covariance, dtype=np.float64))
        self.rng = rng if rng is not None else np.random.default_rng()

    def __call__(self) -> np.ndarray:
        return sample_mvn(self.covariance, self.rng)

    def __repr__(self) -> str:
        return f"NormalRandomVariable(n={self.covariance.shape[0]})"
