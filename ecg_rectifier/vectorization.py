"""
Vectorization module for extracting ECG signals from trace heatmaps.

This module converts the 4-row trace heatmap of a rectified ECG page into
millivolt time series: per-column argmax tracing, baseline substitution for
weak columns, pixel-to-voltage conversion, resampling and lead splitting.
"""

import numpy as np
from dataclasses import dataclass
from scipy.interpolate import interp1d
from typing import Dict, List, Optional, Tuple

from .components import squeeze_batch
from .config import get_config
from .exceptions import InferenceContractError


@dataclass
class LeadSignal:
    """A named signal channel in millivolts."""

    name: str
    samples: np.ndarray
    sample_rate: float

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    @property
    def min_value(self) -> float:
        return float(self.samples.min()) if len(self.samples) else 0.0

    @property
    def max_value(self) -> float:
        return float(self.samples.max()) if len(self.samples) else 0.0


class ECGVectorizer:
    """Vectorizer for extracting ECG signals from trace heatmaps."""

    def __init__(self, config=None):
        """
        Initialize the vectorizer.

        Args:
            config: Configuration object. If None, uses default config.
        """
        self.config = config or get_config()
        self.signal_config = self.config.signal

    def extract_row_positions(
        self,
        heatmap_row: np.ndarray,
        zero_mv: float,
        timespan: Optional[Tuple[int, int]] = None,
        threshold: Optional[float] = None
    ) -> np.ndarray:
        """
        Trace one row: the pixel row of maximum response in every column.

        Columns whose peak response is below the threshold are placed on the
        baseline instead of trusting a weak peak.

        Args:
            heatmap_row: Heatmap of one row channel (H, W)
            zero_mv: Baseline pixel row (0 mV)
            timespan: Active column window [start, end)
            threshold: Detection confidence threshold

        Returns:
            Float pixel rows, one per column of the window
        """
        t0, t1 = timespan or self.signal_config.timespan
        threshold = threshold if threshold is not None else self.signal_config.signal_threshold

        window = heatmap_row[:, t0:t1]
        positions = np.argmax(window, axis=0).astype(np.float64)
        peaks = window[positions.astype(np.int64), np.arange(window.shape[1])]

        return np.where(peaks < threshold, zero_mv, positions)

    def positions_to_millivolts(
        self,
        positions: np.ndarray,
        zero_mv: float,
        mv_to_pixel: Optional[float] = None,
        clip_mv: Optional[float] = None
    ) -> np.ndarray:
        """
        Convert pixel rows to millivolts.

        Args:
            positions: Pixel rows (image coordinates, y grows downward)
            zero_mv: Baseline pixel row
            mv_to_pixel: Pixels per millivolt
            clip_mv: Symmetric clipping range in mV

        Returns:
            Voltage values in mV
        """
        mv_to_pixel = mv_to_pixel or self.signal_config.mv_to_pixel
        clip_mv = clip_mv if clip_mv is not None else self.signal_config.clip_mv

        signal = (zero_mv - positions) / mv_to_pixel
        return np.clip(signal, -clip_mv, clip_mv)

    def interpolate_signal(
        self,
        signal: np.ndarray,
        target_length: int
    ) -> np.ndarray:
        """
        Linearly resample a signal to target length.

        Sample i of the output reads position i / (T - 1) * (n - 1) of the input.

        Args:
            signal: Input signal
            target_length: Target length

        Returns:
            Interpolated signal (zeros if the input has fewer than 2 samples)
        """
        if len(signal) < 2:
            return np.zeros(target_length)
        if len(signal) == target_length:
            return np.asarray(signal, dtype=np.float64)

        x_old = np.linspace(0, 1, len(signal))
        x_new = np.linspace(0, 1, target_length)

        f = interp1d(x_old, signal, kind='linear')
        return f(x_new)

    def extract_row_signals(
        self,
        heatmap: np.ndarray,
        target_length: Optional[int] = None
    ) -> np.ndarray:
        """
        Extract one resampled millivolt signal per row channel.

        Args:
            heatmap: Trace heatmap (rows, H, W) or (1, rows, H, W)
            target_length: Samples per row signal

        Returns:
            Row signals (rows, target_length)

        Raises:
            InferenceContractError: If the heatmap does not match the calibration
        """
        target_length = target_length or self.signal_config.signal_length
        heatmap = squeeze_batch(heatmap)
        self._check_heatmap(heatmap)

        rows = []
        for row, zero_mv in enumerate(self.signal_config.zero_mv[:heatmap.shape[0]]):
            positions = self.extract_row_positions(heatmap[row], zero_mv)
            signal = self.positions_to_millivolts(positions, zero_mv)
            rows.append(self.interpolate_signal(signal, target_length))

        return np.stack(rows)

    def _check_heatmap(self, heatmap: np.ndarray):
        if heatmap.ndim != 3:
            raise InferenceContractError(
                f"Trace heatmap must be (rows, H, W), got shape {heatmap.shape}"
            )

        num_rows, _, width = heatmap.shape
        expected_rows = len(self.signal_config.zero_mv)
        if num_rows != expected_rows:
            raise InferenceContractError(
                f"Trace heatmap has {num_rows} rows, calibration has {expected_rows}"
            )

        t0, t1 = self.signal_config.timespan
        if not 0 <= t0 < t1 <= width:
            raise InferenceContractError(
                f"Signal window [{t0}, {t1}) does not fit heatmap width {width}"
            )

    def split_into_leads(
        self,
        row_signals: np.ndarray,
        lead_rows: Optional[List[List[str]]] = None
    ) -> Tuple[Dict[str, LeadSignal], Optional[LeadSignal]]:
        """
        Split row signals into named leads.

        Rows 0-2 each carry four consecutive quarter-length leads; row 3 is the
        full-length rhythm strip.

        Args:
            row_signals: Row signals (rows, length)
            lead_rows: Lead names per row

        Returns:
            Dictionary mapping lead names to signals, and the rhythm lead (None
            if there is no 4th row)
        """
        lead_rows = lead_rows or self.signal_config.lead_rows
        length = row_signals.shape[1]
        segment_length = length // 4
        lead_rate = length / self.signal_config.segment_duration
        rhythm_rate = length / self.signal_config.duration

        leads = {}
        for row_idx in range(min(len(lead_rows), row_signals.shape[0])):
            row_signal = row_signals[row_idx]
            for seg_idx, lead_name in enumerate(lead_rows[row_idx]):
                start = seg_idx * segment_length
                if start >= length:
                    continue
                end = min(start + segment_length, length)
                leads[lead_name] = LeadSignal(
                    name=lead_name,
                    samples=row_signal[start:end].copy(),
                    sample_rate=lead_rate,
                )

        rhythm = None
        if row_signals.shape[0] > len(lead_rows):
            rhythm = LeadSignal(
                name=self.signal_config.rhythm_lead,
                samples=row_signals[len(lead_rows)].copy(),
                sample_rate=rhythm_rate,
            )

        return leads, rhythm

    def signals_to_array(
        self,
        leads: Dict[str, LeadSignal],
        lead_names: Optional[List[str]] = None
    ) -> np.ndarray:
        """
        Convert lead dictionary to array.

        Args:
            leads: Dictionary mapping lead names to signals
            lead_names: Ordered list of lead names

        Returns:
            Signal array (num_leads, segment_length); missing leads are zeros
        """
        lead_names = lead_names or self.signal_config.lead_names
        length = max(
            (len(leads[name].samples) for name in lead_names if name in leads),
            default=0
        )

        signal_array = np.zeros((len(lead_names), length))
        for i, lead_name in enumerate(lead_names):
            if lead_name in leads:
                samples = leads[lead_name].samples
                signal_array[i, :len(samples)] = samples

        return signal_array

    def vectorize(
        self,
        heatmap: np.ndarray,
        target_length: Optional[int] = None
    ) -> Tuple[np.ndarray, Dict[str, LeadSignal], Optional[LeadSignal]]:
        """
        Complete vectorization pipeline.

        Args:
            heatmap: Trace heatmap (rows, H, W)
            target_length: Samples per row signal

        Returns:
            Row signals, named leads and the rhythm lead
        """
        row_signals = self.extract_row_signals(heatmap, target_length)
        leads, rhythm = self.split_into_leads(row_signals)
        return row_signals, leads, rhythm


def vectorize_heatmap(
    heatmap: np.ndarray,
    config=None,
    target_length: Optional[int] = None
) -> Tuple[np.ndarray, Dict[str, LeadSignal], Optional[LeadSignal]]:
    """
    Convenience function to vectorize a trace heatmap.

    Args:
        heatmap: Trace heatmap (rows, H, W)
        config: Configuration object
        target_length: Samples per row signal

    Returns:
        Row signals, named leads and the rhythm lead
    """
    vectorizer = ECGVectorizer(config)
    return vectorizer.vectorize(heatmap, target_length)
