"""Exceptions raised by the rectification and digitization pipeline."""


class DigitizationError(Exception):
    """Base error for the digitization pipeline."""
    pass


class GeometryError(DigitizationError):
    """Recoverable geometry failure; the affected stage falls back to a plain resize."""
    pass


class InsufficientCorrespondences(GeometryError):
    """Fewer than 4 point pairs were supplied to homography fitting."""

    def __init__(self, count: int):
        super().__init__(f"Need at least 4 point correspondences, got {count}")
        self.count = count


class DegenerateGeometry(GeometryError):
    """Near-zero determinant or denormalization scale."""
    pass


class DecompositionFailure(GeometryError):
    """Singular value decomposition did not converge."""
    pass


class InsufficientGridPoints(GeometryError):
    """Too few grid intersections were detected to rectify the image."""

    def __init__(self, count: int, minimum: int):
        super().__init__(
            f"Not enough grid points: {count} (need more than {minimum})"
        )
        self.count = count
        self.minimum = minimum


class RectificationFailure(GeometryError):
    """Resampling could not produce a usable image."""
    pass


class InferenceContractError(DigitizationError):
    """Model output missing or of the wrong shape. Fatal for the run."""
    pass
