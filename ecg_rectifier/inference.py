"""
Inference pipeline for ECG image rectification and digitization.

This module runs the three stages end to end, from a photographed ECG page to
named lead signals in millivolts.
"""

import logging
import time
import numpy as np
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .config import get_config
from .data_preprocessing import load_image
from .exceptions import DigitizationError
from .keypoints import Keypoint
from .models import HeatmapModel, load_stage_models
from .stages import GridStage, KeypointStage, SignalStage
from .tracing import NULL_TRACER, Tracer
from .vectorization import LeadSignal


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    success: bool
    signals: Dict[str, LeadSignal] = field(default_factory=dict)
    normalized_image: Optional[np.ndarray] = None
    rectified_image: Optional[np.ndarray] = None
    error_message: Optional[str] = None

    keypoints: List[Keypoint] = field(default_factory=list)
    homography: Optional[np.ndarray] = None
    rotation: int = 0
    stage0_used_fallback: bool = False
    stage1_used_fallback: bool = False
    stage0_fallback_reason: Optional[str] = None
    stage1_fallback_reason: Optional[str] = None
    valid_grid_points: int = 0
    row_signals: Optional[np.ndarray] = None
    processing_time: float = 0.0

    @classmethod
    def failure(cls, message: str, processing_time: float = 0.0) -> "PipelineResult":
        return cls(success=False, error_message=message, processing_time=processing_time)

    @property
    def valid_keypoint_count(self) -> int:
        return sum(1 for kp in self.keypoints if kp.is_valid)

    def summary(self) -> Dict[str, object]:
        """JSON-friendly overview of the run."""
        return {
            "success": self.success,
            "error_message": self.error_message,
            "rotation": self.rotation,
            "valid_keypoints": self.valid_keypoint_count,
            "valid_grid_points": self.valid_grid_points,
            "stage0_used_fallback": self.stage0_used_fallback,
            "stage1_used_fallback": self.stage1_used_fallback,
            "stage0_fallback_reason": self.stage0_fallback_reason,
            "stage1_fallback_reason": self.stage1_fallback_reason,
            "leads": sorted(self.signals),
            "processing_time": round(self.processing_time, 3),
        }


class ECGInferencePipeline:
    """Complete rectification and digitization pipeline."""

    def __init__(
        self,
        stage0_model: HeatmapModel,
        stage1_model: HeatmapModel,
        stage2_model: HeatmapModel,
        config=None,
        tracer: Optional[Tracer] = None
    ):
        """
        Initialize inference pipeline.

        Args:
            stage0_model: Marker/orientation model
            stage1_model: Grid point/line model
            stage2_model: Row trace model
            config: Configuration object
            tracer: Event sink for diagnostics
        """
        self.config = config or get_config()
        self.tracer = tracer or NULL_TRACER

        self.keypoint_stage = KeypointStage(stage0_model, self.config, self.tracer)
        self.grid_stage = GridStage(stage1_model, self.config, self.tracer)
        self.signal_stage = SignalStage(stage2_model, self.config, self.tracer)

        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def load(
        cls,
        config=None,
        device: Optional[str] = None,
        tracer: Optional[Tracer] = None
    ) -> "ECGInferencePipeline":
        """
        Build a pipeline from the TorchScript models named in the configuration.

        Args:
            config: Configuration object
            device: Device override ('cuda' or 'cpu')
            tracer: Event sink for diagnostics
        """
        config = config or get_config()
        stage0, stage1, stage2 = load_stage_models(config, device)
        return cls(stage0, stage1, stage2, config=config, tracer=tracer)

    def process(
        self,
        image: np.ndarray,
        target_length: Optional[int] = None,
        progress: Optional[ProgressCallback] = None
    ) -> PipelineResult:
        """
        Complete pipeline: photographed page -> lead signals.

        Geometry failures in stages 0 and 1 fall back to plain resizing and are
        reported on the result. Model contract violations abort the run and
        produce a failed result.

        Args:
            image: Input image (H, W, C) uint8
            target_length: Samples per row signal
            progress: Callback receiving (fraction, message)

        Returns:
            PipelineResult
        """
        start = time.perf_counter()

        def report(fraction: float, message: str):
            if progress is not None:
                progress(fraction, message)

        try:
            with self.tracer.span("pipeline"):
                report(0.1, "Stage 0: Detecting keypoints...")
                with self.tracer.span("stage0"):
                    stage0 = self.keypoint_stage.process(image)
                report(0.3, "Stage 0 complete")

                report(0.4, "Stage 1: Rectifying grid...")
                with self.tracer.span("stage1"):
                    stage1 = self.grid_stage.process(stage0.normalized_image)
                report(0.6, "Stage 1 complete")

                report(0.7, "Stage 2: Extracting signals...")
                with self.tracer.span("stage2"):
                    stage2 = self.signal_stage.process(stage1.rectified_image, target_length)
                report(0.9, "Stage 2 complete")
        except DigitizationError as e:
            logger.exception("Pipeline failed: %s", e)
            return PipelineResult.failure(str(e), time.perf_counter() - start)

        signals = dict(stage2.leads)
        if stage2.rhythm is not None:
            signals[stage2.rhythm.name] = stage2.rhythm

        elapsed = time.perf_counter() - start
        logger.info(
            "Pipeline complete in %.2fs (stage 0 fallback: %s, stage 1 fallback: %s)",
            elapsed, stage0.used_fallback, stage1.used_fallback
        )
        report(1.0, "Complete")

        return PipelineResult(
            success=True,
            signals=signals,
            normalized_image=stage0.normalized_image,
            rectified_image=stage1.rectified_image,
            keypoints=stage0.keypoints,
            homography=stage0.homography,
            rotation=stage0.rotation,
            stage0_used_fallback=stage0.used_fallback,
            stage1_used_fallback=stage1.used_fallback,
            stage0_fallback_reason=stage0.fallback_reason,
            stage1_fallback_reason=stage1.fallback_reason,
            valid_grid_points=stage1.valid_points,
            row_signals=stage2.row_signals,
            processing_time=elapsed,
        )

    def process_async(
        self,
        image: np.ndarray,
        target_length: Optional[int] = None,
        progress: Optional[ProgressCallback] = None
    ) -> "Future[PipelineResult]":
        """Run `process` on a worker thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ecg-pipeline")
        return self._executor.submit(self.process, image, target_length, progress)

    def signals_to_array(self, result: PipelineResult) -> np.ndarray:
        """12-lead array in the standard lead order (missing leads are zeros)."""
        return self.signal_stage.vectorizer.signals_to_array(result.signals)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def predict_from_image(
    image_path: Union[str, Path],
    config=None,
    device: Optional[str] = None,
    target_length: Optional[int] = None
) -> PipelineResult:
    """
    Convenience function for single image prediction.

    Args:
        image_path: Path to ECG image
        config: Configuration object
        device: Device to run on
        target_length: Samples per row signal

    Returns:
        PipelineResult
    """
    pipeline = ECGInferencePipeline.load(config, device)
    image = load_image(image_path, config)
    return pipeline.process(image, target_length)


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m ecg_rectifier.inference <image_path>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)
    result = predict_from_image(sys.argv[1])

    if not result.success:
        print(f"Failed: {result.error_message}")
        sys.exit(1)

    print(f"Extracted {len(result.signals)} lead signals:")
    for lead_name, lead in result.signals.items():
        print(f"  {lead_name}: samples={len(lead.samples)}, "
              f"range=[{lead.min_value:.3f}, {lead.max_value:.3f}]")
