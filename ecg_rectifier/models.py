"""
Inference collaborator contract.

The three stage models are external: anything that maps an RGB image to a
dictionary of named heatmap arrays satisfies `HeatmapModel`. `TorchHeatmapModel`
wraps an exported TorchScript module.
"""

import logging
import numpy as np
import torch
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

from .data_preprocessing import ensure_rgb


logger = logging.getLogger(__name__)

# Output names per stage
STAGE0_OUTPUTS = ("marker", "orientation")
STAGE1_OUTPUTS = ("gridpoint", "gridhline", "gridvline")
STAGE2_OUTPUTS = ("pixel",)


class HeatmapModel:
    """Callable contract: RGB image (H, W, 3) uint8 -> {output name: ndarray}."""

    def __call__(self, image: np.ndarray) -> Mapping[str, np.ndarray]:
        raise NotImplementedError


class TorchHeatmapModel(HeatmapModel):
    """TorchScript-backed heatmap model."""

    def __init__(
        self,
        model_path: Union[str, Path],
        output_names: Sequence[str],
        device: str = "cuda"
    ):
        """
        Load a TorchScript module.

        Args:
            model_path: Path to the exported module
            output_names: Names assigned to tuple outputs, in order
            device: Device to run inference on ('cuda' or 'cpu')
        """
        model_path = Path(model_path)
        if not model_path.exists():
            raise FileNotFoundError(f"Model not found: {model_path}")

        self.device = device if torch.cuda.is_available() else "cpu"
        self.output_names = tuple(output_names)

        self.model = torch.jit.load(str(model_path), map_location=self.device)
        self.model.eval()
        logger.info("Loaded model from %s on %s", model_path, self.device)

    def to_tensor(self, image: np.ndarray) -> torch.Tensor:
        """RGB uint8 (H, W, 3) -> float tensor (1, 3, H, W) in [0, 1]."""
        rgb = ensure_rgb(image).astype(np.float32) / 255.0
        tensor = torch.from_numpy(np.ascontiguousarray(rgb)).permute(2, 0, 1)
        return tensor.unsqueeze(0).to(self.device)

    def __call__(self, image: np.ndarray) -> Dict[str, np.ndarray]:
        with torch.no_grad():
            outputs = self.model(self.to_tensor(image))

        if isinstance(outputs, torch.Tensor):
            outputs = (outputs,)

        if isinstance(outputs, Mapping):
            items = outputs.items()
        else:
            items = zip(self.output_names, outputs)

        return {name: value.detach().float().cpu().numpy() for name, value in items}


def load_stage_models(config, device: Optional[str] = None):
    """
    Load the three stage models named in the configuration.

    Returns:
        (stage0, stage1, stage2) models
    """
    inference_config = config.inference
    device = device or inference_config.device
    return (
        TorchHeatmapModel(inference_config.stage0_model, STAGE0_OUTPUTS, device),
        TorchHeatmapModel(inference_config.stage1_model, STAGE1_OUTPUTS, device),
        TorchHeatmapModel(inference_config.stage2_model, STAGE2_OUTPUTS, device),
    )
