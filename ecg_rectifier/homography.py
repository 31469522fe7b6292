"""
Robust homography estimation.

Normalized Direct Linear Transform (DLT) with a RANSAC wrapper, the same
contract as cv2.findHomography(..., cv2.RANSAC) but with typed failures and
a reproducible random source.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import get_config
from .exceptions import (
    DegenerateGeometry,
    GeometryError,
    InsufficientCorrespondences,
)
from .linalg import apply_homography, invert_3x3, multiply, null_vector
from .tracing import NULL_TRACER, Tracer


logger = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 4


@dataclass
class HomographyResult:
    """Fitted homography and the inlier mask of the supplied correspondences."""

    matrix: np.ndarray       # (3, 3), matrix[2, 2] == 1
    inlier_mask: np.ndarray  # (N,) bool

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))


def normalize_points(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Similarity-normalize a point set (Hartley normalization).

    Args:
        points: (N, 2) points

    Returns:
        Normalized points with centroid at the origin and mean distance sqrt(2),
        and the (3, 3) similarity transform T that produced them
    """
    points = np.asarray(points, dtype=np.float64)
    cx, cy = points.mean(axis=0)

    mean_dist = np.mean(np.hypot(points[:, 0] - cx, points[:, 1] - cy))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 1e-10 else 1.0

    T = np.array([
        [scale, 0.0, -scale * cx],
        [0.0, scale, -scale * cy],
        [0.0, 0.0, 1.0],
    ])
    normalized = np.column_stack([scale * (points[:, 0] - cx), scale * (points[:, 1] - cy)])
    return normalized, T


def build_design_matrix(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Stack the two DLT equations of every correspondence.

    Args:
        src: (N, 2) normalized source points
        dst: (N, 2) normalized destination points

    Returns:
        (2N, 9) design matrix A with A @ h = 0
    """
    n = len(src)
    x, y = src[:, 0], src[:, 1]
    xp, yp = dst[:, 0], dst[:, 1]
    zeros = np.zeros(n)
    ones = np.ones(n)

    A = np.empty((2 * n, 9))
    A[0::2] = np.column_stack([-x, -y, -ones, zeros, zeros, zeros, x * xp, y * xp, xp])
    A[1::2] = np.column_stack([zeros, zeros, zeros, -x, -y, -ones, x * yp, y * yp, yp])
    return A


def reprojection_errors(H: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Squared distance between H(src) and dst for every correspondence."""
    projected = apply_homography(H, src)
    diff = projected - np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    return np.sum(diff ** 2, axis=1)


def reprojection_rmse(H: np.ndarray, src: np.ndarray, dst: np.ndarray) -> float:
    """Root-mean-square reprojection error in pixels."""
    return float(np.sqrt(np.mean(reprojection_errors(H, src, dst))))


class HomographyEstimator:
    """Estimator for projective transforms between point sets."""

    def __init__(
        self,
        config=None,
        tracer: Optional[Tracer] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Initialize the estimator.

        Args:
            config: Configuration object. If None, uses default config.
            tracer: Event sink for diagnostics
            rng: Random generator for RANSAC sampling. If None, every RANSAC
                call draws from a fresh generator seeded from the configuration.
        """
        self.config = config or get_config()
        self.homography_config = self.config.homography
        self.tracer = tracer or NULL_TRACER
        self.rng = rng

    def _sampler(self) -> np.random.Generator:
        if self.rng is not None:
            return self.rng
        seed = self.homography_config.seed
        return np.random.default_rng(self.config.seed if seed is None else seed)

    def solve_dlt(self, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        """
        Fit a homography with the normalized DLT.

        Args:
            src: (N, 2) source points, N >= 4
            dst: (N, 2) destination points

        Returns:
            (3, 3) homography mapping src to dst, with H[2, 2] == 1

        Raises:
            InsufficientCorrespondences: Fewer than 4 points
            DecompositionFailure: SVD did not converge
            DegenerateGeometry: Denormalization scale is ~0
        """
        src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        if len(src) < MIN_CORRESPONDENCES:
            raise InsufficientCorrespondences(len(src))

        src_norm, src_T = normalize_points(src)
        dst_norm, dst_T = normalize_points(dst)

        A = build_design_matrix(src_norm, dst_norm)
        h = null_vector(A)
        H_norm = h.reshape(3, 3)

        # Denormalize: H = T_dst^-1 * H_norm * T_src
        H = multiply(multiply(invert_3x3(dst_T), H_norm), src_T)

        scale = H[2, 2]
        if abs(scale) < self.homography_config.degenerate_eps:
            raise DegenerateGeometry(f"H[2][2] is too small: {scale:.3e}")

        return H / scale

    def ransac(
        self,
        src: np.ndarray,
        dst: np.ndarray,
        threshold: Optional[float] = None,
        max_iterations: Optional[int] = None
    ) -> HomographyResult:
        """
        Robustly fit a homography with random sample consensus.

        Args:
            src: (N, 2) source points
            dst: (N, 2) destination points
            threshold: Inlier reprojection distance in pixels
            max_iterations: Number of random 4-point trials

        Returns:
            Best model, refit on all its inliers when there are at least 4

        Raises:
            InsufficientCorrespondences: Fewer than 4 points
            DegenerateGeometry: No trial produced a model
        """
        threshold = threshold if threshold is not None else self.homography_config.ransac_threshold
        if max_iterations is None:
            max_iterations = self.homography_config.ransac_iterations

        src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        n = len(src)
        if n < MIN_CORRESPONDENCES:
            raise InsufficientCorrespondences(n)

        threshold_sq = threshold * threshold
        best_H = None
        best_count = 0
        best_mask = np.zeros(n, dtype=bool)
        failed_trials = 0
        rng = self._sampler()

        for iteration in range(max_iterations):
            sample = rng.choice(n, size=MIN_CORRESPONDENCES, replace=False)
            try:
                H = self.solve_dlt(src[sample], dst[sample])
            except GeometryError:
                failed_trials += 1
                continue

            mask = reprojection_errors(H, src, dst) < threshold_sq
            count = int(np.count_nonzero(mask))

            if count > best_count:
                best_count = count
                best_mask = mask
                best_H = H
                if self.tracer.enabled:
                    self.tracer.emit("ransac.improved", iteration=iteration, inliers=count, total=n)

            if best_count == n:
                break

        logger.debug(
            "RANSAC best inlier count: %d/%d (%d degenerate samples)",
            best_count, n, failed_trials
        )

        # Refine with all inliers
        if best_count >= MIN_CORRESPONDENCES:
            try:
                refined = self.solve_dlt(src[best_mask], dst[best_mask])
                return HomographyResult(refined, best_mask)
            except GeometryError as e:
                logger.debug("Inlier refit failed (%s), keeping best sample model", e)

        if best_H is None:
            raise DegenerateGeometry("No RANSAC sample produced a valid homography")

        return HomographyResult(best_H, best_mask)

    def find_homography(
        self,
        src: np.ndarray,
        dst: np.ndarray,
        use_ransac: bool = True,
        threshold: Optional[float] = None
    ) -> HomographyResult:
        """
        Compute the homography mapping src points onto dst points.

        RANSAC is used when requested and more than 4 points are supplied;
        otherwise every point is fit directly and reported as an inlier.

        Args:
            src: (N, 2) source points
            dst: (N, 2) destination points
            use_ransac: Whether to use RANSAC
            threshold: RANSAC inlier threshold in pixels

        Returns:
            HomographyResult
        """
        src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        if len(src) != len(dst):
            raise ValueError(
                f"Point count mismatch: {len(src)} source vs {len(dst)} destination"
            )
        if len(src) < MIN_CORRESPONDENCES:
            raise InsufficientCorrespondences(len(src))

        with self.tracer.span("homography", points=len(src), ransac=use_ransac):
            if use_ransac and len(src) > MIN_CORRESPONDENCES:
                result = self.ransac(src, dst, threshold=threshold)
            else:
                H = self.solve_dlt(src, dst)
                result = HomographyResult(H, np.ones(len(src), dtype=bool))

        if self.tracer.enabled:
            self.tracer.emit(
                "homography.result",
                inliers=result.num_inliers,
                rmse=reprojection_rmse(result.matrix, src[result.inlier_mask], dst[result.inlier_mask]),
            )
        return result


def find_homography(
    src: np.ndarray,
    dst: np.ndarray,
    use_ransac: bool = True,
    threshold: Optional[float] = None,
    config=None
) -> HomographyResult:
    """
    Convenience function to fit a homography.

    Args:
        src: (N, 2) source points
        dst: (N, 2) destination points
        use_ransac: Whether to use RANSAC for more than 4 points
        threshold: Inlier threshold in pixels
        config: Configuration object

    Returns:
        HomographyResult
    """
    estimator = HomographyEstimator(config)
    return estimator.find_homography(src, dst, use_ransac=use_ransac, threshold=threshold)
