"""Unit tests for homography estimation."""
import numpy as np
import pytest

from ecg_rectifier.config import Config, HomographyConfig
from ecg_rectifier.exceptions import DegenerateGeometry, InsufficientCorrespondences
from ecg_rectifier.homography import (
    HomographyEstimator,
    build_design_matrix,
    find_homography,
    normalize_points,
    reprojection_errors,
    reprojection_rmse,
)
from ecg_rectifier.linalg import apply_homography


TRUE_H = np.array([
    [1.02, 0.05, 12.0],
    [-0.03, 0.98, -7.5],
    [1.5e-5, -2.0e-5, 1.0],
])


def lattice(n=6, spacing=100.0, offset=50.0):
    xs, ys = np.meshgrid(np.arange(n) * spacing + offset, np.arange(n) * spacing + offset)
    return np.column_stack([xs.ravel(), ys.ravel()])


@pytest.fixture
def estimator():
    return HomographyEstimator(Config())


class TestNormalization:
    """Test Hartley normalization."""

    def test_centroid_and_mean_distance(self):
        points = lattice(4)
        normalized, T = normalize_points(points)

        np.testing.assert_allclose(normalized.mean(axis=0), [0.0, 0.0], atol=1e-12)
        assert np.mean(np.hypot(normalized[:, 0], normalized[:, 1])) == pytest.approx(np.sqrt(2))
        np.testing.assert_allclose(apply_homography(T, points), normalized, atol=1e-12)

    def test_coincident_points_keep_unit_scale(self):
        points = np.full((4, 2), 3.0)
        normalized, T = normalize_points(points)
        assert T[0, 0] == 1.0
        np.testing.assert_allclose(normalized, 0.0)

    def test_design_matrix_rows(self):
        A = build_design_matrix(np.array([[2.0, 3.0]]), np.array([[5.0, 7.0]]))
        np.testing.assert_allclose(A[0], [-2, -3, -1, 0, 0, 0, 10, 15, 5])
        np.testing.assert_allclose(A[1], [0, 0, 0, -2, -3, -1, 14, 21, 7])


class TestDLT:
    """Test the normalized DLT solver."""

    def test_exact_recovery(self, estimator):
        src = lattice(3)
        dst = apply_homography(TRUE_H, src)

        H = estimator.solve_dlt(src, dst)

        assert H[2, 2] == pytest.approx(1.0)
        np.testing.assert_allclose(H, TRUE_H, rtol=1e-6, atol=1e-9)

    def test_four_points(self, estimator):
        src = np.array([[0.0, 0.0], [100.0, 0.0], [100.0, 80.0], [0.0, 80.0]])
        dst = np.array([[10.0, 5.0], [118.0, 12.0], [105.0, 90.0], [3.0, 84.0]])

        H = estimator.solve_dlt(src, dst)
        np.testing.assert_allclose(apply_homography(H, src), dst, atol=1e-6)

    def test_reference_points_give_identity(self):
        config = Config()
        points = np.array(config.keypoint.reference_points)

        result = find_homography(points, points, config=config)

        np.testing.assert_allclose(result.matrix, np.eye(3), atol=1e-8)
        assert result.num_inliers == len(points)

    def test_insufficient_points(self, estimator):
        with pytest.raises(InsufficientCorrespondences) as excinfo:
            estimator.solve_dlt(lattice(3)[:3], lattice(3)[:3])
        assert excinfo.value.count == 3

    def test_vanishing_scale_is_degenerate(self, estimator):
        # (x, y) -> (1/x, y/x) has H[2][2] == 0
        src = np.array([[1.0, 1.0], [2.0, 1.0], [1.0, 2.0], [2.0, 3.0], [4.0, 2.0]])
        dst = np.column_stack([1.0 / src[:, 0], src[:, 1] / src[:, 0]])

        with pytest.raises(DegenerateGeometry):
            estimator.solve_dlt(src, dst)


class TestRansac:
    """Test robust fitting."""

    def test_noisy_recovery_with_outliers(self, estimator):
        rng = np.random.default_rng(3)
        src = lattice(6)
        dst = apply_homography(TRUE_H, src) + rng.normal(scale=0.5, size=src.shape)

        # 30% gross outliers
        outliers = rng.choice(len(src), size=11, replace=False)
        dst[outliers] += rng.uniform(60, 200, size=(11, 2)) * rng.choice([-1, 1], size=(11, 2))

        result = estimator.find_homography(src, dst, use_ransac=True, threshold=3.0)

        assert not result.inlier_mask[outliers].any()
        assert result.num_inliers >= len(src) - len(outliers) - 3

        clean = np.setdiff1d(np.arange(len(src)), outliers)
        truth = apply_homography(TRUE_H, src[clean])
        np.testing.assert_allclose(apply_homography(result.matrix, src[clean]), truth, atol=1.5)

    def test_seeded_runs_are_reproducible(self):
        rng = np.random.default_rng(11)
        src = lattice(5)
        dst = apply_homography(TRUE_H, src)
        dst[:6] += rng.uniform(50, 100, size=(6, 2))

        config = Config(homography=HomographyConfig(seed=123, ransac_iterations=50))
        a = HomographyEstimator(config).ransac(src, dst, threshold=2.0)
        b = HomographyEstimator(config).ransac(src, dst, threshold=2.0)

        np.testing.assert_array_equal(a.matrix, b.matrix)
        np.testing.assert_array_equal(a.inlier_mask, b.inlier_mask)

    def test_repeated_calls_on_one_estimator_agree(self):
        rng = np.random.default_rng(21)
        src = rng.uniform(0, 500, size=(36, 2))
        dst = apply_homography(TRUE_H, src)
        outliers = rng.choice(len(src), size=14, replace=False)
        dst[outliers] += rng.uniform(80, 200, size=(14, 2))

        config = Config(homography=HomographyConfig(seed=5, ransac_iterations=5))
        estimator = HomographyEstimator(config)
        a = estimator.find_homography(src, dst, threshold=2.0)
        b = estimator.find_homography(src, dst, threshold=2.0)

        np.testing.assert_array_equal(a.matrix, b.matrix)
        np.testing.assert_array_equal(a.inlier_mask, b.inlier_mask)

    def test_injected_generator_is_used(self):
        src = np.random.default_rng(8).uniform(0, 500, size=(12, 2))
        dst = apply_homography(TRUE_H, src)
        rng = np.random.default_rng(0)
        before = rng.bit_generator.state

        HomographyEstimator(Config(), rng=rng).ransac(src, dst, max_iterations=1)

        assert rng.bit_generator.state != before

    def test_zero_iterations_is_not_replaced_by_default(self, estimator):
        src = lattice(4)
        dst = apply_homography(TRUE_H, src)
        with pytest.raises(DegenerateGeometry):
            estimator.ransac(src, dst, max_iterations=0)

    def test_direct_fit_marks_all_inliers(self, estimator):
        src = lattice(3)
        dst = apply_homography(TRUE_H, src)
        result = estimator.find_homography(src, dst, use_ransac=False)
        assert result.inlier_mask.all()

    def test_length_mismatch(self, estimator):
        with pytest.raises(ValueError):
            estimator.find_homography(lattice(3), lattice(3)[:5])

    def test_too_few_points(self, estimator):
        with pytest.raises(InsufficientCorrespondences):
            estimator.find_homography(lattice(3)[:2], lattice(3)[:2])

    def test_iteration_budget_from_config(self):
        config = Config(homography=HomographyConfig(ransac_iterations=1, ransac_threshold=0.5))
        estimator = HomographyEstimator(config)
        assert estimator.homography_config.ransac_iterations == 1

        src = np.random.default_rng(5).uniform(0, 500, size=(9, 2))
        dst = apply_homography(TRUE_H, src)
        # One trial on exact data already finds every point
        result = estimator.ransac(src, dst)
        assert result.num_inliers == len(src)


class TestReprojection:
    """Test reprojection diagnostics."""

    def test_errors_are_squared(self):
        src = np.array([[0.0, 0.0], [1.0, 1.0]])
        dst = np.array([[3.0, 4.0], [1.0, 1.0]])
        errors = reprojection_errors(np.eye(3), src, dst)
        np.testing.assert_allclose(errors, [25.0, 0.0])
        assert reprojection_rmse(np.eye(3), src, dst) == pytest.approx(np.sqrt(12.5))
