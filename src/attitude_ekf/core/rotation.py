"""
===============================================================================
ATTITUDE EKF - Rotation Matrix Utilities
===============================================================================

Rotation-matrix (DCM) helpers used by the sensor models, the attitude
correction adapter and the truth generator.

Convention
----------
A rotation R_bn maps body-frame vectors into the navigation frame:

    v_n = R_bn @ v_b

Body angular rate w drives the kinematics dR/dt = R [w x], so a discrete
increment over dt is right-composed:

    R(t + dt) = R(t) @ rotate_vector(w * dt)

Attitude errors are body-frame right perturbations:

    R_true = R_hat @ rotate_vector(delta_theta)

so to first order R_true^T v = R_hat^T v + [R_hat^T v x] delta_theta.

References
----------
    [1] Markley & Crassidis, "Fundamentals of Spacecraft Attitude
        Determination and Control", Springer, 2014, Ch. 2.
    [2] Shepperd, "Quaternion from Rotation Matrix", JGCD, 1978.

===============================================================================
"""

import numpy as np
from scipy.linalg import polar


_SMALL_ANGLE = 1e-12


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Construct the 3x3 skew-symmetric (cross-product) matrix from a 3-vector.

    For a vector v = [vx, vy, vz], the skew-symmetric matrix [v x] is:

        [v x] = |  0   -vz   vy |
                |  vz   0   -vx |
                | -vy   vx   0  |

    such that [v x] @ u = v x u (cross product) for any vector u.

    Parameters
    ----------
    v : np.ndarray
        3-element vector.

    Returns
    -------
    np.ndarray
        3x3 skew-symmetric matrix.
    """
    v = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([
        [0.0,   -v[2],  v[1]],
        [v[2],   0.0,  -v[0]],
        [-v[1],  v[0],  0.0]
    ], dtype=np.float64)


def rotate_vector(rot_vec: np.ndarray) -> np.ndarray:
    """
    Exponential map from a rotation vector to a rotation matrix.

    Uses the Rodrigues formula:

        R = I + sin(theta) [n x] + (1 - cos(theta)) [n x]^2

    where theta = |rot_vec| and n = rot_vec / theta. Near zero the
    second-order series is used so the result stays orthonormal to machine
    precision.

    Parameters
    ----------
    rot_vec : np.ndarray
        3-element rotation vector (radians).

    Returns
    -------
    np.ndarray
        3x3 rotation matrix.
    """
    rot_vec = np.asarray(rot_vec, dtype=np.float64).reshape(3)
    theta = np.linalg.norm(rot_vec)
    K = skew_symmetric(rot_vec)

    if theta < _SMALL_ANGLE:
        return np.eye(3) + K + 0.5 * (K @ K)

    return (np.eye(3)
            + (np.sin(theta) / theta) * K
            + ((1.0 - np.cos(theta)) / theta**2) * (K @ K))


def dcm_to_quaternion(dcm: np.ndarray) -> np.ndarray:
    """
    Convert a rotation matrix to a scalar-first unit quaternion [w, x, y, z].

    Uses Shepperd's method: the largest of the four diagonal quantities is
    extracted first, which keeps the conversion well conditioned for all
    rotation angles including those near 180 degrees. The returned
    quaternion has w >= 0.
    """
    dcm = np.asarray(dcm, dtype=np.float64)
    if dcm.shape != (3, 3):
        raise ValueError(f"DCM must be 3x3, got shape {dcm.shape}")

    trace = np.trace(dcm)
    d0 = 1.0 + trace
    d1 = 1.0 + 2.0 * dcm[0, 0] - trace
    d2 = 1.0 + 2.0 * dcm[1, 1] - trace
    d3 = 1.0 + 2.0 * dcm[2, 2] - trace
    d_max = max(d0, d1, d2, d3)

    if d_max == d0:
        w = 0.5 * np.sqrt(d0)
        scale = 0.25 / w
        x = (dcm[2, 1] - dcm[1, 2]) * scale
        y = (dcm[0, 2] - dcm[2, 0]) * scale
        z = (dcm[1, 0] - dcm[0, 1]) * scale
    elif d_max == d1:
        x = 0.5 * np.sqrt(d1)
        scale = 0.25 / x
        w = (dcm[2, 1] - dcm[1, 2]) * scale
        y = (dcm[0, 1] + dcm[1, 0]) * scale
        z = (dcm[0, 2] + dcm[2, 0]) * scale
    elif d_max == d2:
        y = 0.5 * np.sqrt(d2)
        scale = 0.25 / y
        w = (dcm[0, 2] - dcm[2, 0]) * scale
        x = (dcm[0, 1] + dcm[1, 0]) * scale
        z = (dcm[1, 2] + dcm[2, 1]) * scale
    else:
        z = 0.5 * np.sqrt(d3)
        scale = 0.25 / z
        w = (dcm[1, 0] - dcm[0, 1]) * scale
        x = (dcm[0, 2] + dcm[2, 0]) * scale
        y = (dcm[1, 2] + dcm[2, 1]) * scale

    q = np.array([w, x, y, z], dtype=np.float64)
    q /= np.linalg.norm(q)
    if q[0] < 0.0:
        q = -q
    return q


def rotation_log(dcm: np.ndarray) -> np.ndarray:
    """
    Logarithmic map from a rotation matrix to its rotation vector.

    Inverse of rotate_vector for angles in [0, pi]. Goes through the
    quaternion so the result stays accurate near 0 and near pi.

    Parameters
    ----------
    dcm : np.ndarray
        3x3 rotation matrix.

    Returns
    -------
    np.ndarray
        3-element rotation vector (radians).
    """
    q = dcm_to_quaternion(dcm)
    vec = q[1:]
    sin_half = np.linalg.norm(vec)
    if sin_half < _SMALL_ANGLE:
        return 2.0 * vec
    angle = 2.0 * np.arctan2(sin_half, q[0])
    return angle * vec / sin_half


def orthonormalize(dcm: np.ndarray) -> np.ndarray:
    """
    Project a near-rotation matrix onto SO(3).

    The orthogonal factor of the polar decomposition is the closest
    orthonormal matrix in the Frobenius norm.
    """
    dcm = np.asarray(dcm, dtype=np.float64)
    if dcm.shape != (3, 3):
        raise ValueError(f"Rotation matrix must be 3x3, got shape {dcm.shape}")
    U, _ = polar(dcm)
    if np.linalg.det(U) < 0.0:
        raise ValueError("Matrix is closer to a reflection than to a rotation")
    return U


def is_rotation_matrix(dcm: np.ndarray, tolerance: float = 1e-9) -> bool:
    """Return True if dcm is 3x3 orthonormal with determinant +1."""
    dcm = np.asarray(dcm, dtype=np.float64)
    if dcm.shape != (3, 3):
        return False
    orthogonality_error = np.linalg.norm(dcm.T @ dcm - np.eye(3))
    return bool(orthogonality_error < tolerance
                and abs(np.linalg.det(dcm) - 1.0) < tolerance)


def rotation_angle_between(R_a: np.ndarray, R_b: np.ndarray) -> float:
    """Angle (radians) of the relative rotation R_a^T R_b."""
    return float(np.linalg.norm(rotation_log(np.asarray(R_a).T @ np.asarray(R_b))))
