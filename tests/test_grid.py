"""Unit tests for grid extraction and rectification."""
import numpy as np
import pytest

from ecg_rectifier.config import Config, GridConfig
from ecg_rectifier.exceptions import RectificationFailure
from ecg_rectifier.grid import (
    GridRectifier,
    count_valid_points,
    dense_field,
    extract_grid_points,
    fill_missing_points,
    rectify_image,
    valid_point_mask,
)


def identity_grid(rows, cols, width, height):
    """Control grid whose points sit on an evenly spaced lattice over the image."""
    xs = np.linspace(0, width - 1, cols)
    ys = np.linspace(0, height - 1, rows)
    gx, gy = np.meshgrid(xs, ys)
    return np.stack([gx, gy], axis=-1).astype(np.float32)


class TestExtractGridPoints:
    """Test sparse control grid construction."""

    def test_regular_lattice(self, fakes):
        outputs = fakes.draw_grid_outputs(96, 128, fakes.grid_xs, fakes.grid_ys, 4, 5)

        grid = extract_grid_points(
            outputs["gridpoint"], outputs["gridhline"], outputs["gridvline"], rows=4, cols=5
        )

        assert grid.shape == (4, 5, 2)
        assert count_valid_points(grid) == 20
        for i, y in enumerate(fakes.grid_ys):
            for j, x in enumerate(fakes.grid_xs):
                np.testing.assert_allclose(grid[i, j], [x, y])

    def test_point_off_any_line_is_ignored(self, fakes):
        outputs = fakes.draw_grid_outputs(96, 128, [10], [10], 4, 5)
        # A stray blob where both line maps say background
        outputs["gridpoint"][0, 60:63, 100:103] = 1.0

        grid = extract_grid_points(
            outputs["gridpoint"], outputs["gridhline"], outputs["gridvline"], rows=4, cols=5
        )

        assert count_valid_points(grid) == 1
        np.testing.assert_allclose(grid[0, 0], [10, 10])

    def test_line_index_beyond_grid_is_ignored(self, fakes):
        # Line maps have one more line than the grid accepts
        outputs = fakes.draw_grid_outputs(96, 128, [10, 35], [10, 35], 2, 2)
        grid = extract_grid_points(
            outputs["gridpoint"], outputs["gridhline"], outputs["gridvline"], rows=1, cols=2
        )
        assert count_valid_points(grid) == 2
        assert valid_point_mask(grid)[0].all()

    def test_empty_heatmap(self, fakes):
        outputs = fakes.draw_grid_outputs(40, 50, [], [], 4, 5)
        grid = extract_grid_points(
            outputs["gridpoint"], outputs["gridhline"], outputs["gridvline"], rows=4, cols=5
        )
        assert count_valid_points(grid) == 0


class TestFillMissingPoints:
    """Test inverse-distance fill."""

    def test_fills_from_neighbours(self):
        grid = np.zeros((1, 3, 2), dtype=np.float32)
        grid[0, 0] = (10.0, 20.0)
        grid[0, 2] = (30.0, 40.0)

        filled = fill_missing_points(grid)

        # Equidistant neighbours weigh equally
        np.testing.assert_allclose(filled[0, 1], [20.0, 30.0])
        np.testing.assert_allclose(filled[0, 0], [10.0, 20.0])
        # Input untouched
        assert not grid[0, 1].any()

    def test_closer_points_weigh_more(self):
        grid = np.zeros((1, 4, 2), dtype=np.float32)
        grid[0, 0] = (1.0, 1.0)
        grid[0, 3] = (31.0, 31.0)

        filled = fill_missing_points(grid)

        # Index 1: distances 1 and 2 -> weights 1 and 1/4
        expected = (1.0 * 1.0 + 0.25 * 31.0) / 1.25
        np.testing.assert_allclose(filled[0, 1], [expected, expected], rtol=1e-6)

    def test_no_valid_points_returns_unchanged(self):
        grid = np.zeros((3, 3, 2), dtype=np.float32)
        filled = fill_missing_points(grid)
        np.testing.assert_array_equal(filled, grid)
        assert filled is not grid

    def test_all_points_filled(self):
        rng = np.random.default_rng(1)
        grid = identity_grid(6, 7, 100, 80)
        drop = rng.random((6, 7)) < 0.4
        grid[drop] = 0.0

        filled = fill_missing_points(grid)

        assert valid_point_mask(filled).all()


class TestDenseField:
    """Test sparse-to-dense field expansion."""

    def test_corners_hit_grid_corners(self):
        grid = identity_grid(3, 4, 60, 40)
        map_x, map_y = dense_field(grid, 40, 60)

        assert map_x.shape == (40, 60)
        assert map_x.dtype == np.float32
        assert (map_x[0, 0], map_y[0, 0]) == (0.0, 0.0)
        assert map_x[-1, -1] == pytest.approx(59.0)
        assert map_y[-1, -1] == pytest.approx(39.0)

    def test_identity_grid_gives_identity_field(self):
        grid = identity_grid(5, 6, 51, 41)
        map_x, map_y = dense_field(grid, 41, 51)
        ys, xs = np.mgrid[0:41, 0:51]
        np.testing.assert_allclose(map_x, xs, atol=1e-4)
        np.testing.assert_allclose(map_y, ys, atol=1e-4)

    def test_single_pixel_output(self):
        grid = identity_grid(3, 3, 10, 10)
        map_x, map_y = dense_field(grid, 1, 1)
        assert (map_x[0, 0], map_y[0, 0]) == (0.0, 0.0)

    def test_bad_shape(self):
        with pytest.raises(RectificationFailure):
            dense_field(np.zeros((3, 3)), 10, 10)


class TestRectifyImage:
    """Test grid-driven resampling."""

    def test_identity_grid_reproduces_image(self, page_image):
        height, width = page_image.shape[:2]
        grid = identity_grid(4, 5, width, height)

        rectified = rectify_image(page_image, grid, width, height)

        assert rectified.shape == (height, width, 4)
        assert (rectified[:, :, 3] == 255).all()
        diff = np.abs(rectified[:, :, :3].astype(int) - page_image.astype(int))
        assert diff.max() <= 1

    def test_out_of_range_coordinates_clamp_to_border(self):
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        image[:, -1] = 200
        grid = np.full((2, 2, 2), 50.0, dtype=np.float32)  # far outside

        rectified = rectify_image(image, grid, 4, 4)

        assert (rectified[:, :, 0] == 200).all()

    def test_empty_image(self):
        with pytest.raises(RectificationFailure):
            rectify_image(np.zeros((0, 5, 3), dtype=np.uint8), identity_grid(2, 2, 5, 5), 5, 5)

    def test_non_finite_grid(self, page_image):
        grid = identity_grid(3, 3, 128, 96)
        grid[1, 1] = (np.nan, 4.0)
        with pytest.raises(RectificationFailure):
            rectify_image(page_image, grid, 20, 20)

    def test_invalid_output_size(self, page_image):
        with pytest.raises(RectificationFailure):
            rectify_image(page_image, identity_grid(2, 2, 128, 96), 0, 10)


class TestGridRectifier:
    """Test the configured rectifier."""

    def test_rectify_fills_and_resamples(self, page_image):
        config = Config(grid=GridConfig(rows=4, cols=5))
        rectifier = GridRectifier(config)

        grid = identity_grid(4, 5, 128, 96)
        grid[2, 3] = 0.0

        out = rectifier.rectify(page_image, grid, (64, 48))
        assert out.shape == (48, 64, 4)
