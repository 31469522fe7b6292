"""
Image preprocessing module for ECG image rectification.

This module handles:
- Image loading and channel normalization (grayscale/RGB/RGBA)
- Plain resizing (the deterministic fallback of every geometry stage)
- Aspect-preserving resize with padding for the keypoint model
- Quarter-turn rotation and cropping
"""

import cv2
import numpy as np
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from .config import get_config


@dataclass
class PaddedImage:
    """Result of an aspect-preserving resize followed by padding."""

    image: np.ndarray
    scale: float
    scaled_height: int
    padded_size: Tuple[int, int]  # (width, height)


def ensure_rgb(image: np.ndarray) -> np.ndarray:
    """
    Return the first three channels of an image as uint8 RGB.

    Args:
        image: (H, W), (H, W, 3) or (H, W, 4) image

    Returns:
        (H, W, 3) uint8 image
    """
    image = np.asarray(image)
    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)
    elif image.ndim != 3 or image.shape[2] < 3:
        raise ValueError(f"Unsupported image shape: {image.shape}")

    rgb = image[:, :, :3]
    if rgb.dtype != np.uint8:
        rgb = np.clip(rgb, 0, 255).astype(np.uint8)
    return rgb


def to_rgba(image: np.ndarray, alpha: int = 255) -> np.ndarray:
    """Convert an image to RGBA with a constant alpha channel."""
    rgb = ensure_rgb(image)
    out = np.empty(rgb.shape[:2] + (4,), dtype=np.uint8)
    out[:, :, :3] = rgb
    out[:, :, 3] = alpha
    return out


def resize(
    image: np.ndarray,
    size: Tuple[int, int],
    interpolation: int = cv2.INTER_LINEAR
) -> np.ndarray:
    """
    Resize an image to exact dimensions.

    Args:
        image: Input image
        size: Target size (width, height)
        interpolation: OpenCV interpolation flag

    Returns:
        Resized RGBA image
    """
    width, height = size
    rgba = to_rgba(image)
    # OpenCV uses (width, height) order
    return cv2.resize(rgba, (int(width), int(height)), interpolation=interpolation)


def rotate_quarter_turns(array: np.ndarray, count: int) -> np.ndarray:
    """
    Rotate the first two axes by `count` counter-clockwise quarter turns.

    Negative counts rotate clockwise. Works for images and class maps.
    """
    k = count % 4
    if k == 0:
        return array
    return np.ascontiguousarray(np.rot90(array, k=k, axes=(0, 1)))


def crop(image: np.ndarray, x: int, y: int, width: int, height: int) -> Optional[np.ndarray]:
    """
    Crop a rectangle out of an image.

    Returns:
        The crop, or None if the rectangle does not fit inside the image
    """
    h, w = image.shape[:2]
    if x < 0 or y < 0 or x + width > w or y + height > h:
        return None
    return image[y:y + height, x:x + width].copy()


class ECGImagePreprocessor:
    """Preprocessor for ECG images."""

    def __init__(self, config=None):
        """
        Initialize the preprocessor.

        Args:
            config: Configuration object. If None, uses default config.
        """
        self.config = config or get_config()
        self.image_config = self.config.image

    def load_image(
        self,
        image_path: Union[str, Path],
    ) -> np.ndarray:
        """
        Load an image from file as RGB.

        Args:
            image_path: Path to the image file

        Returns:
            Loaded image as numpy array (H, W, 3)

        Raises:
            FileNotFoundError: If image file doesn't exist
            ValueError: If image cannot be loaded
        """
        image_path = Path(image_path)
        if not image_path.exists():
            raise FileNotFoundError(f"Image not found: {image_path}")

        image = cv2.imread(str(image_path))
        if image is None:
            raise ValueError(f"Failed to load image: {image_path}")

        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def resize_and_pad(
        self,
        image: np.ndarray,
        target_width: Optional[int] = None,
        pad_multiple: Optional[int] = None
    ) -> PaddedImage:
        """
        Resize to a target width keeping the aspect ratio, then pad with black.

        Each padded dimension is the next multiple of `pad_multiple` strictly
        above the scaled dimension.

        Args:
            image: Input image
            target_width: Width after scaling
            pad_multiple: Padding granularity

        Returns:
            PaddedImage with the RGB padded image and the scale used
        """
        target_width = target_width or self.image_config.working_width
        pad_multiple = pad_multiple or self.image_config.pad_multiple

        rgb = ensure_rgb(image)
        height, width = rgb.shape[:2]
        if height == 0 or width == 0:
            raise ValueError(f"Cannot resize an empty image of shape {rgb.shape}")

        scale = target_width / width
        scaled_height = max(1, int(height * scale))

        padded_width = (target_width // pad_multiple + 1) * pad_multiple
        padded_height = (scaled_height // pad_multiple + 1) * pad_multiple

        scaled = cv2.resize(rgb, (target_width, scaled_height), interpolation=cv2.INTER_LINEAR)
        padded = np.zeros((padded_height, padded_width, 3), dtype=np.uint8)
        padded[:scaled_height, :target_width] = scaled

        return PaddedImage(
            image=padded,
            scale=scale,
            scaled_height=scaled_height,
            padded_size=(padded_width, padded_height),
        )

    def fallback_normalize(self, image: np.ndarray) -> np.ndarray:
        """Plain resize to the normalized size (Stage 0 fallback)."""
        return resize(image, self.image_config.normalized_size)

    def fallback_rectify(self, image: np.ndarray) -> np.ndarray:
        """Plain resize to the rectified size (Stage 1 fallback)."""
        return resize(image, self.image_config.rectified_size)

    def crop_for_signal_stage(self, image: np.ndarray) -> np.ndarray:
        """
        Crop the rectified image to the Stage 2 input size from the top-left.

        Falls back to a resize if the image is too small to crop.
        """
        width, height = self.image_config.stage2_size
        cropped = crop(image, 0, 0, width, height)
        if cropped is None:
            return resize(image, (width, height))
        return cropped


def load_image(image_path: Union[str, Path], config=None) -> np.ndarray:
    """
    Convenience function to load an RGB image.

    Args:
        image_path: Path to the image
        config: Configuration object

    Returns:
        Loaded image
    """
    preprocessor = ECGImagePreprocessor(config)
    return preprocessor.load_image(image_path)
