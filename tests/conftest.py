"""Pytest configuration and shared fixtures for the ECG rectification pipeline.

Provides a small calibration so whole-pipeline runs stay fast, and fake stage
models that draw synthetic heatmaps with known geometry.
"""
import sys
import logging
from pathlib import Path

import numpy as np
import pytest

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ecg_rectifier.config import (
    Config,
    GridConfig,
    HomographyConfig,
    ImageConfig,
    KeypointConfig,
    SignalConfig,
)
from ecg_rectifier.models import HeatmapModel


# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)


# Synthetic geometry: input photo 128x96, keypoint model sees it at half size.
INPUT_WIDTH = 128
INPUT_HEIGHT = 96
MARKER_XS = [12, 32, 52]
MARKER_YS = [10, 24, 38]
KEYPOINT_LABELS = [2, 3, 4, 6, 7, 8, 10, 11, 12]

GRID_ROWS = 4
GRID_COLS = 5
GRID_XS = [10 + 25 * j for j in range(GRID_COLS)]
GRID_YS = [10 + 25 * i for i in range(GRID_ROWS)]

ZERO_MV = [15.0, 30.0, 45.0, 60.0]
MV_TO_PIXEL = 5.0


def marker_centers():
    """Blob centres in marker heatmap coordinates, in keypoint label order."""
    return [(x, y) for y in MARKER_YS for x in MARKER_XS]


@pytest.fixture
def small_config():
    """Calibration scaled down to a 128x96 page."""
    return Config(
        image=ImageConfig(
            working_width=64,
            pad_multiple=32,
            normalized_size=(INPUT_WIDTH, INPUT_HEIGHT),
            rectified_size=(110, 85),
            stage2_size=(100, 80),
        ),
        keypoint=KeypointConfig(
            reference_points=[(2.0 * x, 2.0 * y) for x, y in marker_centers()],
        ),
        homography=HomographyConfig(ransac_iterations=200),
        grid=GridConfig(rows=GRID_ROWS, cols=GRID_COLS, min_grid_points=10),
        signal=SignalConfig(
            zero_mv=list(ZERO_MV),
            mv_to_pixel=MV_TO_PIXEL,
            timespan=(5, 95),
            signal_length=100,
        ),
    )


@pytest.fixture
def page_image():
    """Textured RGB page so warps and resamples are checkable."""
    ys, xs = np.mgrid[0:INPUT_HEIGHT, 0:INPUT_WIDTH]
    image = np.empty((INPUT_HEIGHT, INPUT_WIDTH, 3), dtype=np.uint8)
    image[:, :, 0] = (xs * 2) % 256
    image[:, :, 1] = (ys * 2) % 256
    image[:, :, 2] = 128
    return image


def draw_marker(height, width, centers, labels, num_classes=14, half_size=2):
    """(num_classes, H, W) marker heatmap with one square blob per label."""
    marker = np.zeros((num_classes, height, width), dtype=np.float32)
    marker[0] = 0.5
    for (x, y), label in zip(centers, labels):
        marker[label, y - half_size:y + half_size + 1, x - half_size:x + half_size + 1] = 1.0
    return marker


def orientation_output(orientation_class, num_classes=8, locations=4):
    probs = np.full((locations, num_classes), 0.05, dtype=np.float32)
    probs[:, orientation_class] = 0.65
    return probs


class FakeKeypointModel(HeatmapModel):
    """Stage 0 stand-in: fixed marker blobs sized to whatever image it gets."""

    def __init__(self, centers=None, labels=None, orientation_class=0):
        self.centers = marker_centers() if centers is None else centers
        self.labels = KEYPOINT_LABELS if labels is None else labels
        self.orientation_class = orientation_class
        self.calls = []

    def __call__(self, image):
        self.calls.append(image.shape)
        height, width = image.shape[:2]
        return {
            "marker": draw_marker(height, width, self.centers, self.labels)[None],
            "orientation": orientation_output(self.orientation_class),
        }


def draw_grid_outputs(height, width, xs, ys, rows, cols):
    """gridpoint/gridhline/gridvline heatmaps for a regular lattice."""
    gridpoint = np.zeros((1, height, width), dtype=np.float32)
    hline = np.zeros((rows + 1, height, width), dtype=np.float32)
    vline = np.zeros((cols + 1, height, width), dtype=np.float32)
    hline[0] = 0.5
    vline[0] = 0.5

    for i, y in enumerate(ys):
        hline[i + 1, max(0, y - 2):y + 3, :] = 1.0
    for j, x in enumerate(xs):
        vline[j + 1, :, max(0, x - 2):x + 3] = 1.0
    for y in ys:
        for x in xs:
            gridpoint[0, y - 1:y + 2, x - 1:x + 2] = 1.0

    return {"gridpoint": gridpoint, "gridhline": hline, "gridvline": vline}


class FakeGridModel(HeatmapModel):
    """Stage 1 stand-in: a regular 4x5 lattice, or nothing at all."""

    def __init__(self, empty=False, rows=GRID_ROWS, cols=GRID_COLS, flat_points=False):
        self.empty = empty
        self.flat_points = flat_points
        self.rows = rows
        self.cols = cols
        self.calls = []

    def __call__(self, image):
        self.calls.append(image.shape)
        height, width = image.shape[:2]
        xs = [] if self.empty else GRID_XS
        ys = [] if self.empty else GRID_YS
        outputs = draw_grid_outputs(height, width, xs, ys, self.rows, self.cols)
        if self.flat_points:
            outputs["gridpoint"] = outputs["gridpoint"][0]
        return outputs


def draw_traces(height, width, rows_y, value=1.0):
    """(len(rows_y), H, W) trace heatmap with one flat line per row."""
    pixel = np.zeros((len(rows_y), height, width), dtype=np.float32)
    for r, y in enumerate(rows_y):
        pixel[r, y, :] = value
    return pixel


class FakeTraceModel(HeatmapModel):
    """Stage 2 stand-in: each row traces a flat line `mv` millivolts above baseline."""

    def __init__(self, mv=1.0, drop_output=False):
        self.mv = mv
        self.drop_output = drop_output
        self.calls = []

    def __call__(self, image):
        self.calls.append(image.shape)
        if self.drop_output:
            return {}
        height, width = image.shape[:2]
        rows_y = [int(round(z - self.mv * MV_TO_PIXEL)) for z in ZERO_MV]
        return {"pixel": draw_traces(height, width, rows_y)[None]}


@pytest.fixture
def keypoint_model():
    return FakeKeypointModel()


@pytest.fixture
def grid_model():
    return FakeGridModel()


@pytest.fixture
def trace_model():
    return FakeTraceModel()


@pytest.fixture
def fake_models():
    """Factory for fake model triples with per-test overrides."""
    def make(stage0=None, stage1=None, stage2=None):
        return (
            stage0 or FakeKeypointModel(),
            stage1 or FakeGridModel(),
            stage2 or FakeTraceModel(),
        )
    return make


@pytest.fixture
def fakes():
    """Fake model classes and heatmap helpers for tests that need custom geometry."""
    from types import SimpleNamespace
    return SimpleNamespace(
        KeypointModel=FakeKeypointModel,
        GridModel=FakeGridModel,
        TraceModel=FakeTraceModel,
        draw_marker=draw_marker,
        draw_grid_outputs=draw_grid_outputs,
        draw_traces=draw_traces,
        orientation_output=orientation_output,
        marker_centers=marker_centers,
        keypoint_labels=KEYPOINT_LABELS,
        grid_xs=GRID_XS,
        grid_ys=GRID_YS,
        zero_mv=ZERO_MV,
    )
