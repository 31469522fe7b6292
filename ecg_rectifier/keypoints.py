"""
Keypoint and orientation decoding for the Stage 0 marker model.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .components import argmax_channels, label_and_statistics_value
from .config import get_config
from .data_preprocessing import rotate_quarter_turns


logger = logging.getLogger(__name__)


@dataclass
class Keypoint:
    """Detected lead marker; (0, 0) means not detected."""

    x: float
    y: float
    label: int
    lead_name: str = field(default="Unknown")
    area: int = 0

    @property
    def is_valid(self) -> bool:
        return self.x > 0 and self.y > 0


def decode_orientation(probabilities: np.ndarray, num_classes: int = 8) -> int:
    """
    Average class probabilities over all locations and return the argmax class.

    Args:
        probabilities: Array whose flattened length is a multiple of num_classes,
            laid out as consecutive num_classes-long vectors

    Returns:
        Orientation class index
    """
    flat = np.asarray(probabilities, dtype=np.float64).ravel()
    if flat.size == 0 or flat.size % num_classes != 0:
        raise ValueError(
            f"Orientation output of size {flat.size} is not a multiple of {num_classes}"
        )
    avg = flat.reshape(-1, num_classes).mean(axis=0)
    return int(np.argmax(avg))


class KeypointDetector:
    """Turns marker heatmaps into the homography keypoints."""

    def __init__(self, config=None):
        """
        Initialize the detector.

        Args:
            config: Configuration object. If None, uses default config.
        """
        self.config = config or get_config()
        self.keypoint_config = self.config.keypoint

    def orientation_to_rotation(self, orientation: int) -> int:
        """Number of counter-clockwise quarter turns that undo an orientation class."""
        return self.keypoint_config.orientation_to_rotation.get(orientation, 0)

    def detect_rotation(self, orientation_output: np.ndarray) -> int:
        orientation = decode_orientation(
            orientation_output, self.keypoint_config.num_orientation_classes
        )
        rotation = self.orientation_to_rotation(orientation)
        logger.info("Detected orientation: %d, rotation: %d", orientation, rotation)
        return rotation

    def make_keypoint(self, x: float, y: float, label: int, area: int = 0) -> Keypoint:
        lead_name = self.keypoint_config.label_to_lead.get(label, "Unknown")
        return Keypoint(x=x, y=y, label=label, lead_name=lead_name, area=area)

    def extract_keypoints(
        self,
        marker: np.ndarray,
        scale: float,
        rotation: int = 0,
        valid_height: Optional[int] = None
    ) -> List[Keypoint]:
        """
        Locate every keypoint label in the marker heatmap.

        The class map is rotated by the same quarter turns as the image, and
        each label's largest component becomes a keypoint if it is big enough.

        Args:
            marker: Marker heatmap (C, H, W)
            scale: Factor from original to heatmap pixels
            rotation: Counter-clockwise quarter turns
            valid_height: Unpadded rows of the heatmap

        Returns:
            One keypoint per configured label, in label order; missing ones are (0, 0)
        """
        class_map = argmax_channels(marker, height=valid_height)
        class_map = rotate_quarter_turns(class_map, rotation)

        if logger.isEnabledFor(logging.DEBUG):
            labels, counts = np.unique(class_map, return_counts=True)
            logger.debug("Label distribution: %s", dict(zip(labels.tolist(), counts.tolist())))

        keypoints = []
        for label in self.keypoint_config.keypoint_labels:
            _, stats = label_and_statistics_value(class_map, label)

            if stats and stats[0].area >= self.keypoint_config.min_component_area:
                largest = stats[0]
                keypoints.append(self.make_keypoint(
                    largest.centroid_x / scale,
                    largest.centroid_y / scale,
                    label,
                    area=largest.area,
                ))
            else:
                keypoints.append(self.make_keypoint(0.0, 0.0, label))
                logger.debug("Keypoint %d not found", label)

        return keypoints

    def correspondences(self, keypoints: List[Keypoint]):
        """
        Pair valid keypoints with their reference positions.

        Returns:
            (src, dst) arrays of shape (N, 2)
        """
        reference = self.keypoint_config.reference_points
        pairs = [
            ((kp.x, kp.y), reference[i])
            for i, kp in enumerate(keypoints)
            if kp.is_valid and i < len(reference)
        ]
        if not pairs:
            return np.zeros((0, 2)), np.zeros((0, 2))

        src, dst = zip(*pairs)
        return np.array(src, dtype=np.float64), np.array(dst, dtype=np.float64)


def keypoints_to_dict(keypoints: List[Keypoint]) -> Dict[str, Dict[str, float]]:
    """Serializable view of keypoints keyed by lead name."""
    return {
        kp.lead_name: {"x": kp.x, "y": kp.y, "label": kp.label, "valid": kp.is_valid}
        for kp in keypoints
    }
