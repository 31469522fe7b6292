"""
Connected component labeling for heatmap post-processing.

Two-pass union-find labeling with 8-connectivity, per-region statistics, and
channel helpers for (C, H, W) heatmap tensors.
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class RegionStats:
    """Statistics of one labeled region."""

    label: int
    area: int
    centroid_x: float
    centroid_y: float
    bbox: Tuple[int, int, int, int]  # (min_x, min_y, max_x, max_y)

    @property
    def centroid(self) -> Tuple[float, float]:
        return self.centroid_x, self.centroid_y


class UnionFind:
    """Disjoint-set arena addressed by integer index."""

    def __init__(self):
        # Index 0 is background and never joined
        self.parent: List[int] = [0]
        self.rank: List[int] = [0]

    def make_set(self) -> int:
        index = len(self.parent)
        self.parent.append(index)
        self.rank.append(0)
        return index

    def find(self, x: int) -> int:
        parent = self.parent
        root = x
        while parent[root] != root:
            root = parent[root]
        # Path compression
        while parent[x] != root:
            parent[x], x = root, parent[x]
        return root

    def union(self, x: int, y: int) -> None:
        px = self.find(x)
        py = self.find(y)
        if px == py:
            return

        rank = self.rank
        if rank[px] < rank[py]:
            self.parent[px] = py
        elif rank[px] > rank[py]:
            self.parent[py] = px
        else:
            self.parent[py] = px
            rank[px] += 1


def mask_from_threshold(data: np.ndarray, threshold: float) -> np.ndarray:
    """Foreground where value > threshold."""
    return np.asarray(data) > threshold


def mask_from_value(data: np.ndarray, value: int) -> np.ndarray:
    """Foreground where value == target."""
    return np.asarray(data) == value


def label_components(mask: np.ndarray) -> np.ndarray:
    """
    Label 8-connected foreground regions of a 2D mask.

    Args:
        mask: Boolean mask (H, W)

    Returns:
        Integer label array (H, W); 0 is background, regions are 1..k in
        raster order of their first pixel
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.ndim != 2:
        raise ValueError(f"Expected a 2D mask, got shape {mask.shape}")

    height, width = mask.shape
    if height == 0 or width == 0:
        return np.zeros((height, width), dtype=np.int32)

    # Flat row-major storage; only foreground pixels are visited
    foreground = np.flatnonzero(mask).tolist()
    labels = [0] * (height * width)
    uf = UnionFind()

    # First pass: provisional labels, equivalences recorded in the arena
    for idx in foreground:
        y, x = divmod(idx, width)
        neighbors = []

        if y > 0:
            up = idx - width
            if x > 0 and labels[up - 1]:
                neighbors.append(labels[up - 1])
            if labels[up]:
                neighbors.append(labels[up])
            if x < width - 1 and labels[up + 1]:
                neighbors.append(labels[up + 1])
        if x > 0 and labels[idx - 1]:
            neighbors.append(labels[idx - 1])

        if not neighbors:
            labels[idx] = uf.make_set()
        else:
            min_label = min(neighbors)
            labels[idx] = min_label
            for other in neighbors:
                if other != min_label:
                    uf.union(min_label, other)

    # Second pass: roots -> dense labels
    final = {}
    result = np.zeros(height * width, dtype=np.int32)
    for idx in foreground:
        root = uf.find(labels[idx])
        dense = final.get(root)
        if dense is None:
            dense = len(final) + 1
            final[root] = dense
        result[idx] = dense

    return result.reshape(height, width)


def region_statistics(labels: np.ndarray) -> List[RegionStats]:
    """
    Compute area, centroid and bounding box per label.

    Args:
        labels: Label array (H, W) with 0 as background

    Returns:
        Region statistics sorted by descending area
    """
    labels = np.asarray(labels)
    if labels.size == 0:
        return []

    max_label = int(labels.max())
    if max_label <= 0:
        return []

    ys, xs = np.nonzero(labels)
    ids = labels[ys, xs]
    n = max_label + 1

    areas = np.bincount(ids, minlength=n)
    sum_x = np.bincount(ids, weights=xs.astype(np.float64), minlength=n)
    sum_y = np.bincount(ids, weights=ys.astype(np.float64), minlength=n)

    min_x = np.full(n, np.iinfo(np.int64).max, dtype=np.int64)
    min_y = np.full(n, np.iinfo(np.int64).max, dtype=np.int64)
    max_x = np.zeros(n, dtype=np.int64)
    max_y = np.zeros(n, dtype=np.int64)
    np.minimum.at(min_x, ids, xs)
    np.minimum.at(min_y, ids, ys)
    np.maximum.at(max_x, ids, xs)
    np.maximum.at(max_y, ids, ys)

    stats = []
    for label in range(1, n):
        area = int(areas[label])
        if area == 0:
            continue
        stats.append(RegionStats(
            label=label,
            area=area,
            centroid_x=float(sum_x[label] / area),
            centroid_y=float(sum_y[label] / area),
            bbox=(int(min_x[label]), int(min_y[label]), int(max_x[label]), int(max_y[label])),
        ))

    # sorted() is stable, so equal areas keep label order
    return sorted(stats, key=lambda s: s.area, reverse=True)


def label_and_statistics(mask: np.ndarray) -> Tuple[np.ndarray, List[RegionStats]]:
    """Label a boolean mask and compute its region statistics."""
    labels = label_components(mask)
    return labels, region_statistics(labels)


def label_and_statistics_threshold(
    data: np.ndarray,
    threshold: float
) -> Tuple[np.ndarray, List[RegionStats]]:
    """Label pixels of a float map above threshold."""
    return label_and_statistics(mask_from_threshold(data, threshold))


def label_and_statistics_value(
    data: np.ndarray,
    value: int
) -> Tuple[np.ndarray, List[RegionStats]]:
    """Label pixels of an integer map equal to value."""
    return label_and_statistics(mask_from_value(data, value))


# Heatmap channel helpers

def squeeze_batch(data: np.ndarray, ndim: int = 3) -> np.ndarray:
    """Drop a leading batch axis of size 1 if present."""
    data = np.asarray(data)
    if data.ndim == ndim + 1 and data.shape[0] == 1:
        data = data[0]
    return data


def extract_channel(data: np.ndarray, channel: int) -> np.ndarray:
    """2D slice of a (C, H, W) tensor."""
    data = squeeze_batch(data)
    return data[channel]


def argmax_channels(
    data: np.ndarray,
    height: Optional[int] = None,
    width: Optional[int] = None
) -> np.ndarray:
    """
    Per-pixel argmax over the channel axis of a (C, H, W) tensor.

    Args:
        data: Heatmap tensor
        height: Rows to keep (defaults to all); lets callers drop padding
        width: Columns to keep (defaults to all)

    Returns:
        Integer class map (height, width); ties pick the lowest channel
    """
    data = squeeze_batch(data)
    if data.ndim != 3:
        raise ValueError(f"Expected a (C, H, W) tensor, got shape {data.shape}")

    h = data.shape[1] if height is None else min(height, data.shape[1])
    w = data.shape[2] if width is None else min(width, data.shape[2])
    return np.argmax(data[:, :h, :w], axis=0)


def max_channels(data: np.ndarray) -> np.ndarray:
    """Per-pixel maximum over the channel axis of a (C, H, W) tensor."""
    data = squeeze_batch(data)
    return np.max(data, axis=0)
