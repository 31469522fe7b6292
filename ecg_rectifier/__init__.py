"""
ECG Image Rectification & Digitization
======================================

Geometric rectification of photographed 12-lead ECG printouts and
conversion of the traces into calibrated millivolt signals.

Main modules:
- components: Connected component labeling of heatmaps
- homography: Normalized DLT + RANSAC homography estimation
- warp: Homography-based perspective warping
- grid: Sparse control grid -> dense field rectification
- vectorization: Trace heatmap -> lead signals
- stages: The three pipeline stages with fallbacks
- inference: End-to-end inference pipeline
"""

__version__ = "0.1.0"

from .config import Config, get_config
from .exceptions import (
    DigitizationError,
    GeometryError,
    InferenceContractError,
)
from .inference import ECGInferencePipeline, PipelineResult
from .stages import StageStatus
from .vectorization import LeadSignal

__all__ = [
    "Config",
    "get_config",
    "DigitizationError",
    "GeometryError",
    "InferenceContractError",
    "ECGInferencePipeline",
    "PipelineResult",
    "StageStatus",
    "LeadSignal",
]
