"""
Small dense linear algebra kernel.

3x3 inversion and multiplication for homographies, SVD of arbitrary dense
matrices, and projective point mapping.
"""

import numpy as np
from scipy import linalg as sla
from typing import Tuple

from .exceptions import DecompositionFailure, DegenerateGeometry


DET_EPS = 1e-10
W_EPS = 1e-10


def determinant_3x3(m: np.ndarray) -> float:
    """Cofactor expansion along the first row."""
    return float(
        m[0, 0] * (m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1])
        - m[0, 1] * (m[1, 0] * m[2, 2] - m[1, 2] * m[2, 0])
        + m[0, 2] * (m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0])
    )


def invert_3x3(m: np.ndarray, eps: float = DET_EPS) -> np.ndarray:
    """
    Invert a 3x3 matrix via its adjugate.

    Args:
        m: (3, 3) matrix
        eps: Minimum absolute determinant

    Returns:
        (3, 3) inverse

    Raises:
        DegenerateGeometry: If |det| <= eps
    """
    m = np.asarray(m, dtype=np.float64)
    if m.shape != (3, 3):
        raise ValueError(f"Expected a 3x3 matrix, got shape {m.shape}")

    det = determinant_3x3(m)
    if abs(det) <= eps:
        raise DegenerateGeometry(f"Matrix is singular (det={det:.3e})")

    inv = 1.0 / det
    return inv * np.array([
        [m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1],
         m[0, 2] * m[2, 1] - m[0, 1] * m[2, 2],
         m[0, 1] * m[1, 2] - m[0, 2] * m[1, 1]],
        [m[1, 2] * m[2, 0] - m[1, 0] * m[2, 2],
         m[0, 0] * m[2, 2] - m[0, 2] * m[2, 0],
         m[0, 2] * m[1, 0] - m[0, 0] * m[1, 2]],
        [m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0],
         m[0, 1] * m[2, 0] - m[0, 0] * m[2, 1],
         m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0]],
    ])


def multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Matrix product with shape checking."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.ndim != 2 or b.ndim != 2 or a.shape[1] != b.shape[0]:
        raise ValueError(f"Cannot multiply shapes {a.shape} and {b.shape}")
    return a @ b


def svd(a: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Full singular value decomposition a = U @ diag(s) @ Vt.

    Raises:
        DecompositionFailure: If LAPACK does not converge or the input is not finite
    """
    a = np.asarray(a, dtype=np.float64)
    if a.ndim != 2 or a.size == 0:
        raise ValueError(f"SVD needs a non-empty 2D matrix, got shape {a.shape}")
    if not np.all(np.isfinite(a)):
        raise DecompositionFailure("Matrix contains non-finite values")

    try:
        u, s, vt = sla.svd(a, full_matrices=True, lapack_driver='gesvd')
    except np.linalg.LinAlgError as e:
        raise DecompositionFailure(f"SVD did not converge: {e}") from e

    return u, s, vt


def null_vector(a: np.ndarray) -> np.ndarray:
    """Right singular vector of the smallest singular value (least-squares solution of a @ h = 0)."""
    _, _, vt = svd(a)
    return vt[-1]


def apply_homography(h: np.ndarray, points: np.ndarray, eps: float = W_EPS) -> np.ndarray:
    """
    Map (N, 2) points through a homography.

    Points whose homogeneous denominator is within eps of zero are returned unchanged.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    x, y = points[:, 0], points[:, 1]

    w = h[2, 0] * x + h[2, 1] * y + h[2, 2]
    safe = np.abs(w) > eps
    w_safe = np.where(safe, w, 1.0)

    px = (h[0, 0] * x + h[0, 1] * y + h[0, 2]) / w_safe
    py = (h[1, 0] * x + h[1, 1] * y + h[1, 2]) / w_safe

    mapped = np.stack([px, py], axis=1)
    mapped[~safe] = points[~safe]
    return mapped
