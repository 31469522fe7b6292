"""
Pipeline stages.

Stage 0: orientation + keypoints -> homography -> normalized image
Stage 1: grid detection -> grid rectification -> rectified image
Stage 2: trace heatmap -> row signals -> named leads

Geometry failures in stages 0 and 1 are recovered locally with a plain
resize and reported through the stage result's status. Violations of the
model output contract raise InferenceContractError.
"""

import enum
import logging
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from .components import squeeze_batch
from .config import get_config
from .data_preprocessing import ECGImagePreprocessor, ensure_rgb, rotate_quarter_turns
from .exceptions import (
    GeometryError,
    InferenceContractError,
    InsufficientCorrespondences,
    InsufficientGridPoints,
    RectificationFailure,
)
from .grid import GridRectifier, count_valid_points
from .homography import HomographyEstimator
from .keypoints import Keypoint, KeypointDetector
from .models import HeatmapModel
from .tracing import NULL_TRACER, Tracer
from .vectorization import ECGVectorizer, LeadSignal
from .warp import PerspectiveWarper


logger = logging.getLogger(__name__)


class StageStatus(enum.Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"


@dataclass
class KeypointStageResult:
    """Stage 0 output."""

    status: StageStatus
    normalized_image: np.ndarray
    keypoints: List[Keypoint]
    rotation: int
    homography: Optional[np.ndarray] = None
    inlier_mask: Optional[np.ndarray] = None
    warp_coverage: Optional[float] = None
    fallback_reason: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.status is StageStatus.FALLBACK

    @property
    def valid_keypoints(self) -> List[Keypoint]:
        return [kp for kp in self.keypoints if kp.is_valid]


@dataclass
class GridStageResult:
    """Stage 1 output."""

    status: StageStatus
    rectified_image: np.ndarray
    grid: Optional[np.ndarray] = None
    valid_points: int = 0
    fallback_reason: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.status is StageStatus.FALLBACK


@dataclass
class SignalStageResult:
    """Stage 2 output."""

    row_signals: np.ndarray
    leads: Dict[str, LeadSignal]
    rhythm: Optional[LeadSignal]

    @property
    def signal_length(self) -> int:
        return self.row_signals.shape[1]


def require_output(
    outputs: Mapping[str, np.ndarray],
    name: str,
    ndim: int,
    channels: Optional[int] = None
) -> np.ndarray:
    """
    Fetch a named model output and check its rank (after dropping a batch axis).

    Raises:
        InferenceContractError: If the output is missing or malformed
    """
    if name not in outputs:
        raise InferenceContractError(f"Model output '{name}' missing")

    value = squeeze_batch(np.asarray(outputs[name], dtype=np.float32), ndim=ndim)
    if value.ndim != ndim:
        raise InferenceContractError(
            f"Model output '{name}' must have {ndim} dimensions, got shape {value.shape}"
        )
    if channels is not None and value.shape[0] != channels:
        raise InferenceContractError(
            f"Model output '{name}' must have {channels} channels, got {value.shape[0]}"
        )
    return value


class KeypointStage:
    """Stage 0: orientation, keypoints and perspective normalization."""

    def __init__(self, model: HeatmapModel, config=None, tracer: Optional[Tracer] = None):
        """
        Initialize the stage.

        Args:
            model: Marker/orientation model
            config: Configuration object. If None, uses default config.
            tracer: Event sink for diagnostics
        """
        self.config = config or get_config()
        self.tracer = tracer or NULL_TRACER
        self.model = model

        self.preprocessor = ECGImagePreprocessor(self.config)
        self.detector = KeypointDetector(self.config)
        self.estimator = HomographyEstimator(self.config, tracer=self.tracer)
        width, height = self.config.image.normalized_size
        self.warper = PerspectiveWarper(width, height, tracer=self.tracer)

    def run_model(self, image: np.ndarray):
        padded = self.preprocessor.resize_and_pad(image)
        logger.info(
            "Padded size: %dx%d, scale: %.4f",
            padded.padded_size[0], padded.padded_size[1], padded.scale
        )

        outputs = self.model(padded.image)
        marker = require_output(outputs, "marker", ndim=3)
        if "orientation" not in outputs:
            raise InferenceContractError("Model output 'orientation' missing")

        max_label = max(self.config.keypoint.keypoint_labels)
        if marker.shape[0] <= max_label:
            raise InferenceContractError(
                f"Marker output has {marker.shape[0]} channels, needs more than {max_label}"
            )
        return padded, marker, outputs["orientation"]

    def process(self, image: np.ndarray) -> KeypointStageResult:
        """
        Process an image through Stage 0.

        Args:
            image: Photographed ECG page (H, W, C)

        Returns:
            KeypointStageResult; status FALLBACK means the normalized image is
            a plain resize of the rotated input
        """
        image = ensure_rgb(image)
        logger.info("Stage 0 input size: %dx%d", image.shape[1], image.shape[0])

        padded, marker, orientation = self.run_model(image)
        try:
            rotation = self.detector.detect_rotation(orientation)
        except ValueError as e:
            raise InferenceContractError(str(e)) from e

        rotated = rotate_quarter_turns(image, rotation)
        keypoints = self.detector.extract_keypoints(
            marker,
            scale=padded.scale,
            rotation=rotation,
            valid_height=min(marker.shape[1], padded.scaled_height),
        )
        valid = [kp for kp in keypoints if kp.is_valid]
        logger.info("Found %d/%d valid keypoints", len(valid), len(keypoints))
        if self.tracer.enabled:
            self.tracer.emit("stage0.keypoints", valid=len(valid), total=len(keypoints))

        homography = None
        inlier_mask = None
        coverage = None
        try:
            if len(valid) < self.config.keypoint.min_keypoints:
                raise InsufficientCorrespondences(len(valid))

            src, dst = self.detector.correspondences(keypoints)
            result = self.estimator.find_homography(
                src, dst, use_ransac=True,
                threshold=self.config.homography.ransac_threshold
            )
            homography = result.matrix
            inlier_mask = result.inlier_mask
            logger.info("Homography computed with %d/%d inliers", result.num_inliers, len(src))

            warped = self.warper.warp(rotated, homography)
            coverage = warped.coverage
            if coverage <= self.config.homography.min_warp_coverage:
                raise RectificationFailure(
                    f"Perspective warp covers {coverage:.1%} of the output"
                )
            logger.info("Perspective warp applied (coverage %.1f%%)", coverage * 100)

            return KeypointStageResult(
                status=StageStatus.SUCCESS,
                normalized_image=warped.image,
                keypoints=keypoints,
                rotation=rotation,
                homography=homography,
                inlier_mask=inlier_mask,
                warp_coverage=coverage,
            )
        except GeometryError as e:
            logger.warning("Stage 0 geometry failed (%s), using fallback", e)
            if self.tracer.enabled:
                self.tracer.emit("stage0.fallback", reason=type(e).__name__)

            return KeypointStageResult(
                status=StageStatus.FALLBACK,
                normalized_image=self.preprocessor.fallback_normalize(rotated),
                keypoints=keypoints,
                rotation=rotation,
                homography=homography,
                inlier_mask=inlier_mask,
                warp_coverage=coverage,
                fallback_reason=str(e),
            )


class GridStage:
    """Stage 1: grid detection and rectification."""

    def __init__(self, model: HeatmapModel, config=None, tracer: Optional[Tracer] = None):
        """
        Initialize the stage.

        Args:
            model: Grid point/line model
            config: Configuration object. If None, uses default config.
            tracer: Event sink for diagnostics
        """
        self.config = config or get_config()
        self.tracer = tracer or NULL_TRACER
        self.model = model

        self.preprocessor = ECGImagePreprocessor(self.config)
        self.rectifier = GridRectifier(self.config)

    def run_model(self, image: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        grid_config = self.config.grid
        outputs = self.model(ensure_rgb(image))

        if "gridpoint" not in outputs:
            raise InferenceContractError("Model output 'gridpoint' missing")
        gridpoint = np.asarray(outputs["gridpoint"], dtype=np.float32)
        if gridpoint.ndim != 2:
            gridpoint = require_output(outputs, "gridpoint", ndim=3, channels=1)[0]
        hline = require_output(outputs, "gridhline", ndim=3, channels=grid_config.rows + 1)
        vline = require_output(outputs, "gridvline", ndim=3, channels=grid_config.cols + 1)

        if hline.shape[1:] != gridpoint.shape or vline.shape[1:] != gridpoint.shape:
            raise InferenceContractError(
                f"Grid outputs disagree on size: gridpoint {gridpoint.shape}, "
                f"gridhline {hline.shape[1:]}, gridvline {vline.shape[1:]}"
            )
        return gridpoint, hline, vline

    def process(self, normalized_image: np.ndarray) -> GridStageResult:
        """
        Process a normalized image through Stage 1.

        Args:
            normalized_image: Output of Stage 0

        Returns:
            GridStageResult; status FALLBACK means the rectified image is a
            plain resize of the normalized image
        """
        gridpoint, hline, vline = self.run_model(normalized_image)

        grid = None
        valid_points = 0
        try:
            grid = self.rectifier.extract(gridpoint, hline, vline)
            valid_points = count_valid_points(grid)
            logger.info("Valid grid points: %d", valid_points)
            if self.tracer.enabled:
                self.tracer.emit("stage1.grid", valid=valid_points, total=grid.shape[0] * grid.shape[1])

            if valid_points <= self.config.grid.min_grid_points:
                raise InsufficientGridPoints(valid_points, self.config.grid.min_grid_points)

            with self.tracer.span("stage1.rectify"):
                rectified = self.rectifier.rectify(
                    normalized_image, grid, self.config.image.rectified_size
                )
            logger.info("Rectification successful")

            return GridStageResult(
                status=StageStatus.SUCCESS,
                rectified_image=rectified,
                grid=grid,
                valid_points=valid_points,
            )
        except GeometryError as e:
            logger.warning("Stage 1 grid extraction/rectification failed (%s), using fallback", e)
            if self.tracer.enabled:
                self.tracer.emit("stage1.fallback", reason=type(e).__name__)

            return GridStageResult(
                status=StageStatus.FALLBACK,
                rectified_image=self.preprocessor.fallback_rectify(normalized_image),
                grid=grid,
                valid_points=valid_points,
                fallback_reason=str(e),
            )


class SignalStage:
    """Stage 2: trace extraction."""

    def __init__(self, model: HeatmapModel, config=None, tracer: Optional[Tracer] = None):
        """
        Initialize the stage.

        Args:
            model: Row trace model
            config: Configuration object. If None, uses default config.
            tracer: Event sink for diagnostics
        """
        self.config = config or get_config()
        self.tracer = tracer or NULL_TRACER
        self.model = model

        self.preprocessor = ECGImagePreprocessor(self.config)
        self.vectorizer = ECGVectorizer(self.config)

    def process(self, rectified_image: np.ndarray, target_length: Optional[int] = None) -> SignalStageResult:
        """
        Process a rectified image through Stage 2.

        Args:
            rectified_image: Output of Stage 1
            target_length: Samples per row signal

        Returns:
            SignalStageResult
        """
        cropped = self.preprocessor.crop_for_signal_stage(rectified_image)
        logger.info("Stage 2 input size: %dx%d", cropped.shape[1], cropped.shape[0])

        outputs = self.model(ensure_rgb(cropped))
        pixel = require_output(outputs, "pixel", ndim=3)

        with self.tracer.span("stage2.vectorize"):
            row_signals, leads, rhythm = self.vectorizer.vectorize(pixel, target_length)

        for i, signal in enumerate(row_signals):
            logger.debug("Row %d: min=%.3f, max=%.3f", i, signal.min(), signal.max())
        logger.info("Extracted %d leads", len(leads) + (1 if rhythm is not None else 0))

        return SignalStageResult(row_signals=row_signals, leads=leads, rhythm=rhythm)
