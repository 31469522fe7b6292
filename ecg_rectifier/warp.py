"""
Homography-based perspective warping.

Backward mapping: every output pixel is sent through the inverse homography
and bilinear-sampled from the source when its 2x2 neighbourhood lies fully
inside the source image. Everything else stays transparent black.
"""

import logging
import cv2
import numpy as np
from dataclasses import dataclass

from .data_preprocessing import ensure_rgb
from .linalg import W_EPS, invert_3x3
from .tracing import NULL_TRACER


logger = logging.getLogger(__name__)


@dataclass
class WarpResult:
    """Warped image and the fraction of output pixels that mapped inside the source."""

    image: np.ndarray  # (H, W, 4) RGBA
    coverage: float


def inverse_map(h_inv: np.ndarray, out_width: int, out_height: int):
    """
    Source coordinates of every output pixel under the inverse homography.

    Returns:
        (map_x, map_y) float64 arrays of shape (out_height, out_width)
    """
    xs, ys = np.meshgrid(
        np.arange(out_width, dtype=np.float64),
        np.arange(out_height, dtype=np.float64)
    )
    w = h_inv[2, 0] * xs + h_inv[2, 1] * ys + h_inv[2, 2]
    safe = np.abs(w) > W_EPS
    w = np.where(safe, w, 1.0)

    map_x = (h_inv[0, 0] * xs + h_inv[0, 1] * ys + h_inv[0, 2]) / w
    map_y = (h_inv[1, 0] * xs + h_inv[1, 1] * ys + h_inv[1, 2]) / w

    # Points at infinity stay where they are
    map_x = np.where(safe, map_x, xs)
    map_y = np.where(safe, map_y, ys)
    return map_x, map_y


def warp_perspective(
    image: np.ndarray,
    homography: np.ndarray,
    out_width: int,
    out_height: int,
    tracer=None
) -> WarpResult:
    """
    Warp an image with a homography (source -> output coordinates).

    Args:
        image: Source image (H, W, C)
        homography: (3, 3) matrix mapping source pixels to output pixels
        out_width: Output width
        out_height: Output height
        tracer: Optional event sink

    Returns:
        WarpResult with an RGBA image; unmapped pixels are (0, 0, 0, 0)

    Raises:
        DegenerateGeometry: If the homography is not invertible
    """
    tracer = tracer or NULL_TRACER
    rgb = np.ascontiguousarray(ensure_rgb(image))
    in_height, in_width = rgb.shape[:2]

    h_inv = invert_3x3(np.asarray(homography, dtype=np.float64))
    map_x, map_y = inverse_map(h_inv, out_width, out_height)

    # Strictly inside: the whole bilinear neighbourhood must exist
    x0 = np.floor(map_x)
    y0 = np.floor(map_y)
    inside = (x0 >= 0) & (x0 + 1 < in_width) & (y0 >= 0) & (y0 + 1 < in_height)

    sampled = cv2.remap(
        rgb,
        map_x.astype(np.float32),
        map_y.astype(np.float32),
        interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0
    )

    out = np.zeros((out_height, out_width, 4), dtype=np.uint8)
    out[inside, :3] = sampled[inside]
    out[inside, 3] = 255

    total = out_width * out_height
    coverage = float(np.count_nonzero(inside)) / total if total else 0.0

    logger.debug("Warp valid pixels: %d / %d (%.1f%%)", np.count_nonzero(inside), total, coverage * 100)
    if tracer.enabled:
        tracer.emit("warp.coverage", coverage=coverage, width=out_width, height=out_height)

    return WarpResult(image=out, coverage=coverage)


class PerspectiveWarper:
    """Perspective warper with a fixed output size."""

    def __init__(self, out_width: int, out_height: int, tracer=None):
        self.out_width = out_width
        self.out_height = out_height
        self.tracer = tracer or NULL_TRACER

    def warp(self, image: np.ndarray, homography: np.ndarray) -> WarpResult:
        return warp_perspective(
            image, homography, self.out_width, self.out_height, tracer=self.tracer
        )
