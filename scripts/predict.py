"""
Prediction script for ECG image rectification and digitization.

This script runs the three-stage pipeline on ECG photos and saves the
extracted signals together with per-image diagnostics.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import cv2
import numpy as np
from tqdm import tqdm

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ecg_rectifier.config import get_config
from ecg_rectifier.data_preprocessing import load_image
from ecg_rectifier.inference import ECGInferencePipeline
from ecg_rectifier.keypoints import keypoints_to_dict
from ecg_rectifier.tracing import LoggingTracer, configure_logging


logger = logging.getLogger("predict")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Rectify ECG photos and extract lead signals")

    parser.add_argument(
        "--input",
        type=str,
        required=True,
        help="Path to an ECG image or a directory of images"
    )
    parser.add_argument("--stage0_model", type=str, default=None, help="Keypoint/orientation TorchScript model")
    parser.add_argument("--stage1_model", type=str, default=None, help="Grid TorchScript model")
    parser.add_argument("--stage2_model", type=str, default=None, help="Trace TorchScript model")
    parser.add_argument(
        "--output_dir",
        type=str,
        default="predictions",
        help="Path to save predictions"
    )
    parser.add_argument(
        "--device",
        type=str,
        default="cuda",
        help="Device (cuda or cpu)"
    )
    parser.add_argument(
        "--signal_length",
        type=int,
        default=None,
        help="Samples per row signal (default from config)"
    )
    parser.add_argument(
        "--save_images",
        action="store_true",
        help="Also save the normalized and rectified images"
    )
    parser.add_argument(
        "--image_extensions",
        type=str,
        default="png,jpg,jpeg",
        help="Comma-separated list of image extensions to process"
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        help="Logging level"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Log pipeline trace events"
    )

    return parser.parse_args(argv)


def get_image_files(input_path, extensions):
    """
    Get all image files for an input path.

    Args:
        input_path: Image file or directory
        extensions: List of file extensions

    Returns:
        Sorted list of image file paths
    """
    input_path = Path(input_path)
    if input_path.is_file():
        return [input_path]

    image_files = set()
    for ext in extensions:
        image_files.update(input_path.glob(f"*.{ext}"))
        image_files.update(input_path.glob(f"*.{ext.upper()}"))

    return sorted(image_files)


def save_result(result, signals, image_path, output_dir, save_images=False):
    """
    Save one pipeline result.

    Writes `<stem>.npz` holding the 12-lead array, the rhythm strip, the row
    signals and the homography, plus the rectified images if requested.
    """
    stem = image_path.stem
    arrays = {"signals": signals}
    if "II-rhythm" in result.signals:
        arrays["rhythm"] = result.signals["II-rhythm"].samples
    if result.row_signals is not None:
        arrays["row_signals"] = result.row_signals
    if result.homography is not None:
        arrays["homography"] = result.homography

    np.savez_compressed(output_dir / f"{stem}.npz", **arrays)

    if save_images:
        for name, image in (("normalized", result.normalized_image), ("rectified", result.rectified_image)):
            if image is not None:
                bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGR)
                cv2.imwrite(str(output_dir / f"{stem}_{name}.png"), bgr)


def main(args):
    """
    Main prediction function.

    Args:
        args: Command line arguments
    """
    configure_logging(args.log_level)
    config = get_config()
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for stage, path in (("stage0_model", args.stage0_model),
                        ("stage1_model", args.stage1_model),
                        ("stage2_model", args.stage2_model)):
        if path is not None:
            setattr(config.inference, stage, Path(path))

    logger.info("=" * 60)
    logger.info("ECG Image Rectification - Prediction")
    logger.info("=" * 60)
    logger.info("Input: %s", args.input)
    logger.info("Output directory: %s", output_dir)
    logger.info("Device: %s", args.device)

    extensions = args.image_extensions.split(',')
    image_files = get_image_files(args.input, extensions)
    logger.info("Found %d images to process", len(image_files))

    if len(image_files) == 0:
        logger.info("No images found. Exiting.")
        return 1

    tracer = LoggingTracer() if args.trace else None
    pipeline = ECGInferencePipeline.load(config, device=args.device, tracer=tracer)

    summary = {}
    processed = 0
    with pipeline:
        for image_path in tqdm(image_files, desc="Processing images"):
            try:
                image = load_image(image_path, config)
            except (FileNotFoundError, ValueError) as e:
                logger.error("Could not read %s: %s", image_path, e)
                summary[image_path.name] = {"success": False, "error_message": str(e)}
                continue

            result = pipeline.process(image, target_length=args.signal_length)
            entry = result.summary()
            entry["keypoints"] = keypoints_to_dict(result.keypoints)
            summary[image_path.name] = entry

            if not result.success:
                logger.error("Failed on %s: %s", image_path, result.error_message)
                continue

            save_result(
                result,
                pipeline.signals_to_array(result),
                image_path,
                output_dir,
                save_images=args.save_images,
            )
            processed += 1

    with open(output_dir / "summary.json", 'w') as f:
        json.dump(summary, f, indent=2)

    fallbacks0 = sum(1 for entry in summary.values() if entry.get("stage0_used_fallback"))
    fallbacks1 = sum(1 for entry in summary.values() if entry.get("stage1_used_fallback"))

    logger.info("=" * 60)
    logger.info("Prediction Summary")
    logger.info("=" * 60)
    logger.info("Processed: %d/%d images", processed, len(image_files))
    logger.info("Stage 0 fallbacks: %d", fallbacks0)
    logger.info("Stage 1 fallbacks: %d", fallbacks1)
    logger.info("Saved predictions to %s", output_dir)

    return 0 if processed == len(image_files) else 1


if __name__ == "__main__":
    args = parse_args()
    sys.exit(main(args))
