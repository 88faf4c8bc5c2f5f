from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.3
DEFAULT_FLOOR = 0.015


@dataclass(frozen=True)
class HeatmapStats:
    min: float
    max: float
    mean: float
    mean_abs: float
    non_zero_count: int
    total_count: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _validate_alpha(alpha: float) -> float:
    alpha = float(alpha)
    if not 0.0 < alpha <= 1.0:
        raise ValueError(f"alpha must be in (0, 1], got: {alpha}")
    return alpha


def sanitize(values: np.ndarray) -> np.ndarray:
    """Replace NaN and infinities with 0 so they cannot poison the smoothing accumulator."""
    arr = np.asarray(values, dtype=np.float64)
    bad = ~np.isfinite(arr)
    if bad.any():
        logger.debug("Clamping %d non-finite heatmap cells to 0", int(np.sum(bad)))
        arr = arr.copy()
        arr[bad] = 0.0
    return arr


def smooth(previous: np.ndarray | None, current: np.ndarray, alpha: float) -> np.ndarray:
    alpha = _validate_alpha(alpha)
    current = np.asarray(current, dtype=np.float64)
    if previous is None:
        return current
    previous = np.asarray(previous, dtype=np.float64)
    if previous.shape != current.shape:
        logger.debug("Smoothing reset: shape changed %s -> %s", previous.shape, current.shape)
        return current
    return alpha * current + (1.0 - alpha) * previous


def apply_floor(values: np.ndarray, floor: float) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    return np.where(np.abs(arr) < float(floor), 0.0, arr)


def heatmap_stats(values: np.ndarray) -> HeatmapStats:
    arr = np.asarray(values, dtype=np.float64)
    cells = arr[np.isfinite(arr)]
    if cells.size == 0:
        return HeatmapStats(min=0.0, max=0.0, mean=0.0, mean_abs=0.0, non_zero_count=0, total_count=0)
    return HeatmapStats(
        min=float(np.min(cells)),
        max=float(np.max(cells)),
        mean=float(np.mean(cells)),
        mean_abs=float(np.mean(np.abs(cells))),
        non_zero_count=int(np.count_nonzero(cells)),
        total_count=int(cells.size),
    )


class TemporalStabilizer:
    """Holds the previous stabilized frame and applies smoothing + motion floor in frame order."""

    def __init__(self, alpha: float = DEFAULT_ALPHA, floor: float = DEFAULT_FLOOR) -> None:
        self.alpha = _validate_alpha(alpha)
        if floor < 0:
            raise ValueError(f"floor must be >= 0, got: {floor}")
        self.floor = float(floor)
        self._previous: np.ndarray | None = None
        self._lock = threading.Lock()

    @property
    def previous(self) -> np.ndarray | None:
        with self._lock:
            return None if self._previous is None else self._previous.copy()

    def update(self, current: np.ndarray) -> np.ndarray:
        clean = sanitize(current)
        with self._lock:
            smoothed = smooth(self._previous, clean, self.alpha)
            result = apply_floor(smoothed, self.floor)
            self._previous = result
            return result.copy()

    def hold(self) -> np.ndarray | None:
        """Return the retained frame unchanged; used when the current frame is skipped."""
        return self.previous

    def reset(self) -> None:
        with self._lock:
            self._previous = None
