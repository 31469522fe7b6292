"""
Configuration file for the ECG image rectification pipeline.

Contains the calibration constants, thresholds and tunable parameters of
every stage. Values are grouped per concern and aggregated by `Config`.
"""

from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


# Project root directory
ROOT_DIR = Path(__file__).parent.parent.absolute()
MODEL_DIR = ROOT_DIR / "models"


@dataclass
class ImageConfig:
    """Image geometry used between stages."""

    # Stage 0 input: resized to this width, padded to a multiple of `pad_multiple`
    working_width: int = 1440
    pad_multiple: int = 32

    # Stage 0/1 normalized image size (width, height)
    normalized_size: Tuple[int, int] = (1440, 1152)

    # Output of Stage 1 (width, height)
    rectified_size: Tuple[int, int] = (2200, 1700)

    # Stage 2 input, cropped from the rectified image (width, height)
    stage2_size: Tuple[int, int] = (2176, 1696)


@dataclass
class KeypointConfig:
    """Keypoint detection and orientation configuration."""

    # Marker class -> lead name
    label_to_lead: Dict[int, str] = field(default_factory=lambda: {
        0: 'None', 1: 'I', 2: 'aVR', 3: 'V1', 4: 'V4',
        5: 'II', 6: 'aVL', 7: 'V2', 8: 'V5',
        9: 'III', 10: 'aVF', 11: 'V3', 12: 'V6', 13: 'II-rhythm'
    })

    # Labels used as homography keypoints: aVR, V1, V4, aVL, V2, V5, aVF, V3, V6
    keypoint_labels: List[int] = field(default_factory=lambda: [
        2, 3, 4, 6, 7, 8, 10, 11, 12
    ])

    # Canonical keypoint positions in the normalized image, same order as keypoint_labels
    reference_points: List[Tuple[float, float]] = field(default_factory=lambda: [
        (440.5, 529.3), (715.2, 529.3), (1013.1, 529.3),
        (440.5, 689.9), (715.2, 689.9), (1013.1, 689.9),
        (440.5, 849.9), (715.2, 849.9), (1013.1, 849.9),
    ])

    min_component_area: int = 10
    min_keypoints: int = 4

    # Orientation head: class -> number of counter-clockwise quarter turns
    num_orientation_classes: int = 8
    orientation_to_rotation: Dict[int, int] = field(default_factory=lambda: {
        0: 0, 4: 0,
        1: -1, 5: -1,
        2: -2, 6: -2,
        3: -3, 7: -3,
    })


@dataclass
class HomographyConfig:
    """Robust homography estimation configuration."""

    ransac_iterations: int = 1000
    ransac_threshold: float = 10.0  # pixels
    degenerate_eps: float = 1e-10
    seed: Optional[int] = None  # falls back to Config.seed

    # Warps mapping at most this fraction of pixels inside the source are rejected
    min_warp_coverage: float = 0.0


@dataclass
class GridConfig:
    """Grid detection and rectification configuration."""

    rows: int = 44
    cols: int = 57
    point_threshold: float = 0.5

    # Rectification needs strictly more valid grid points than this
    min_grid_points: int = 100

    # Grid-index distance below which an IDW candidate is skipped
    missing_point_eps: float = 1e-3


@dataclass
class SignalConfig:
    """Signal extraction configuration."""

    # Pixel row of the 0 mV baseline for each of the 4 rows
    zero_mv: List[float] = field(default_factory=lambda: [
        703.5, 987.5, 1271.5, 1531.5
    ])
    mv_to_pixel: float = 79.0

    # Active horizontal window [start, end) in pixels
    timespan: Tuple[int, int] = (118, 2080)

    signal_threshold: float = 0.05
    clip_mv: float = 5.0

    # 500 Hz * 10 seconds
    signal_length: int = 5000
    duration: float = 10.0
    segment_duration: float = 2.5

    # Rows 0-2 hold 4 leads each, row 3 is the rhythm strip
    lead_rows: List[List[str]] = field(default_factory=lambda: [
        ['I', 'aVR', 'V1', 'V4'],
        ['II', 'aVL', 'V2', 'V5'],
        ['III', 'aVF', 'V3', 'V6'],
    ])
    lead_names: List[str] = field(default_factory=lambda: [
        'I', 'II', 'III', 'aVR', 'aVL', 'aVF',
        'V1', 'V2', 'V3', 'V4', 'V5', 'V6'
    ])
    rhythm_lead: str = 'II-rhythm'


@dataclass
class InferenceConfig:
    """External model configuration."""

    stage0_model: Path = MODEL_DIR / "stage0.pt"
    stage1_model: Path = MODEL_DIR / "stage1.pt"
    stage2_model: Path = MODEL_DIR / "stage2.pt"
    device: str = "cuda"  # cuda, cpu


# Global configuration
@dataclass
class Config:
    """Master configuration class."""

    image: ImageConfig = field(default_factory=ImageConfig)
    keypoint: KeypointConfig = field(default_factory=KeypointConfig)
    homography: HomographyConfig = field(default_factory=HomographyConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)

    # General settings
    seed: int = 42
    verbose: bool = True
    log_level: str = "INFO"


# Create default configuration instance
config = Config()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config


def update_config(**kwargs):
    """Update configuration with new values."""
    global config
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ValueError(f"Unknown configuration key: {key}")


if __name__ == "__main__":
    # Print configuration
    cfg = get_config()
    print("ECG Rectifier Configuration")
    print("=" * 50)
    print(f"Root Directory: {ROOT_DIR}")
    print(f"Model Directory: {MODEL_DIR}")
    print(f"\nImage Config:")
    print(f"  Normalized Size: {cfg.image.normalized_size}")
    print(f"  Rectified Size: {cfg.image.rectified_size}")
    print(f"\nHomography Config:")
    print(f"  RANSAC Iterations: {cfg.homography.ransac_iterations}")
    print(f"  RANSAC Threshold: {cfg.homography.ransac_threshold}")
    print(f"\nGrid Config:")
    print(f"  Grid: {cfg.grid.rows}x{cfg.grid.cols}")
    print(f"  Min Grid Points: {cfg.grid.min_grid_points}")
    print(f"\nSignal Config:")
    print(f"  Signal Length: {cfg.signal.signal_length}")
    print(f"  Pixels per mV: {cfg.signal.mv_to_pixel}")
