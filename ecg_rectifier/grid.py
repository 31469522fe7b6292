"""
Grid-based image rectification.

Builds a sparse control grid from the grid heatmaps, fills unobserved
intersections, expands the grid into a dense per-pixel resample field and
resamples the image through it. The resampling is equivalent to
torch.nn.functional.grid_sample(mode='bilinear', padding_mode='border').
"""

import logging
import cv2
import numpy as np
from typing import Tuple

from .components import argmax_channels, label_and_statistics_threshold
from .config import get_config
from .data_preprocessing import ensure_rgb
from .exceptions import RectificationFailure


logger = logging.getLogger(__name__)


def extract_grid_points(
    gridpoint: np.ndarray,
    hline: np.ndarray,
    vline: np.ndarray,
    rows: int,
    cols: int,
    threshold: float = 0.5
) -> np.ndarray:
    """
    Assign detected grid intersections to their (row, col) grid slot.

    Args:
        gridpoint: Grid point confidence map (H, W) or (1, H, W)
        hline: Horizontal line class logits (rows + 1, H, W); class 0 is background
        vline: Vertical line class logits (cols + 1, H, W); class 0 is background
        rows: Number of grid rows
        cols: Number of grid columns
        threshold: Confidence threshold for grid points

    Returns:
        Sparse control grid (rows, cols, 2) of (x, y); (0, 0) marks a missing point
    """
    gridpoint = np.asarray(gridpoint)
    while gridpoint.ndim > 2 and gridpoint.shape[0] == 1:
        gridpoint = gridpoint[0]
    if gridpoint.ndim != 2:
        raise ValueError(f"Grid point map must be 2D, got shape {gridpoint.shape}")

    height, width = gridpoint.shape
    _, point_stats = label_and_statistics_threshold(gridpoint, threshold)

    hline_map = argmax_channels(hline, height, width)
    vline_map = argmax_channels(vline, height, width)

    grid = np.zeros((rows, cols, 2), dtype=np.float32)
    for stat in point_stats:
        x = int(np.floor(stat.centroid_x + 0.5))
        y = int(np.floor(stat.centroid_y + 0.5))
        if not (0 <= x < hline_map.shape[1] and 0 <= y < hline_map.shape[0]):
            continue

        # Line indices are 1-based (0 = background)
        h_idx = int(hline_map[y, x])
        v_idx = int(vline_map[y, x])
        if 0 < h_idx <= rows and 0 < v_idx <= cols:
            grid[h_idx - 1, v_idx - 1] = (stat.centroid_x, stat.centroid_y)

    logger.debug("Assigned %d of %d grid point candidates", count_valid_points(grid), len(point_stats))
    return grid


def valid_point_mask(grid: np.ndarray) -> np.ndarray:
    """True where a grid entry is observed, i.e. not exactly (0, 0)."""
    return np.any(grid != 0, axis=-1)


def count_valid_points(grid: np.ndarray) -> int:
    """Number of observed grid entries."""
    return int(np.count_nonzero(valid_point_mask(grid)))


def fill_missing_points(grid: np.ndarray, eps: float = 1e-3) -> np.ndarray:
    """
    Fill unobserved grid entries by inverse-distance-squared weighting.

    Distances are measured in grid-index space over all observed entries;
    candidates closer than eps are skipped.

    Args:
        grid: Sparse control grid (rows, cols, 2)
        eps: Minimum grid-index distance for a candidate

    Returns:
        New grid with missing entries filled (unchanged if nothing is observed)
    """
    grid = np.array(grid, dtype=np.float32)
    valid = valid_point_mask(grid)
    if not valid.any() or valid.all():
        return grid

    valid_rc = np.argwhere(valid)
    missing_rc = np.argwhere(~valid)
    values = grid[valid].astype(np.float64)

    diff = missing_rc[:, None, :].astype(np.float64) - valid_rc[None, :, :]
    dist_sq = np.sum(diff ** 2, axis=-1)

    usable = dist_sq >= eps * eps
    weights = np.zeros_like(dist_sq)
    weights[usable] = 1.0 / dist_sq[usable]
    total = weights.sum(axis=1)

    filled = (weights @ values) / np.where(total > 0, total, 1.0)[:, None]
    has_weight = total > 0
    rows, cols = missing_rc[has_weight, 0], missing_rc[has_weight, 1]
    grid[rows, cols] = filled[has_weight]
    return grid


def _axis_weights(out_size: int, grid_size: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Lower index, upper index and fraction for each output position along one axis."""
    if out_size > 1:
        pos = np.arange(out_size, dtype=np.float64) / (out_size - 1) * (grid_size - 1)
    else:
        pos = np.zeros(out_size, dtype=np.float64)

    lo = np.clip(np.floor(pos).astype(np.int64), 0, grid_size - 1)
    hi = np.minimum(lo + 1, grid_size - 1)
    frac = pos - lo
    return lo, hi, frac


def dense_field(grid: np.ndarray, out_height: int, out_width: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Expand a control grid into a per-output-pixel source coordinate field.

    Each output pixel maps proportionally into grid-index space and the four
    surrounding control points are interpolated bilinearly.

    Args:
        grid: Control grid (rows, cols, 2) in source pixel coordinates
        out_height: Output height
        out_width: Output width

    Returns:
        (map_x, map_y), each float32 of shape (out_height, out_width)
    """
    grid = np.asarray(grid, dtype=np.float64)
    if grid.ndim != 3 or grid.shape[2] != 2 or grid.shape[0] < 1 or grid.shape[1] < 1:
        raise RectificationFailure(f"Invalid control grid shape: {grid.shape}")

    rows, cols = grid.shape[:2]
    y0, y1, fy = _axis_weights(out_height, rows)
    x0, x1, fx = _axis_weights(out_width, cols)

    # Bilinear interpolation is separable: columns first, then rows
    fx = fx[None, :, None]
    across = grid[:, x0] * (1 - fx) + grid[:, x1] * fx  # (rows, out_width, 2)

    fy = fy[:, None, None]
    field = across[y0] * (1 - fy) + across[y1] * fy  # (out_height, out_width, 2)

    return field[..., 0].astype(np.float32), field[..., 1].astype(np.float32)


def remap_bilinear(
    image: np.ndarray,
    map_x: np.ndarray,
    map_y: np.ndarray,
) -> np.ndarray:
    """
    Bilinear-sample an image at fractional coordinates, clamping to the border.

    Returns:
        RGBA image of the map's shape with an opaque alpha channel
    """
    rgb = np.ascontiguousarray(ensure_rgb(image))
    sampled = cv2.remap(
        rgb,
        map_x,
        map_y,
        interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE
    )

    out = np.empty(map_x.shape + (4,), dtype=np.uint8)
    out[:, :, :3] = sampled
    out[:, :, 3] = 255
    return out


def rectify_image(
    image: np.ndarray,
    grid: np.ndarray,
    out_width: int,
    out_height: int
) -> np.ndarray:
    """
    Rectify an image with a (filled) control grid.

    Args:
        image: Source image (H, W, C)
        grid: Control grid (rows, cols, 2) in source pixel coordinates
        out_width: Output width
        out_height: Output height

    Returns:
        Rectified RGBA image (out_height, out_width, 4)

    Raises:
        RectificationFailure: If the image or grid cannot produce a usable output
    """
    image = np.asarray(image)
    if image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0:
        raise RectificationFailure(f"Cannot rectify an empty image of shape {image.shape}")
    if out_width <= 0 or out_height <= 0:
        raise RectificationFailure(f"Invalid output size {out_width}x{out_height}")

    map_x, map_y = dense_field(grid, out_height, out_width)
    if not (np.all(np.isfinite(map_x)) and np.all(np.isfinite(map_y))):
        raise RectificationFailure("Resample field contains non-finite coordinates")

    return remap_bilinear(image, map_x, map_y)


class GridRectifier:
    """Rectifier driven by a detected control grid."""

    def __init__(self, config=None):
        """
        Initialize the rectifier.

        Args:
            config: Configuration object. If None, uses default config.
        """
        self.config = config or get_config()
        self.grid_config = self.config.grid

    def extract(self, gridpoint: np.ndarray, hline: np.ndarray, vline: np.ndarray) -> np.ndarray:
        """Build the sparse control grid from the three grid heatmaps."""
        return extract_grid_points(
            gridpoint,
            hline,
            vline,
            rows=self.grid_config.rows,
            cols=self.grid_config.cols,
            threshold=self.grid_config.point_threshold,
        )

    def fill(self, grid: np.ndarray) -> np.ndarray:
        """Fill missing control points."""
        return fill_missing_points(grid, eps=self.grid_config.missing_point_eps)

    def rectify(self, image: np.ndarray, grid: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
        """Fill the grid and resample the image to size (width, height)."""
        filled = self.fill(grid)
        return rectify_image(image, filled, size[0], size[1])
