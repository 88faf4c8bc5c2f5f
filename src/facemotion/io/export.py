from __future__ import annotations

import json
import logging
import math
import threading
from pathlib import Path
from typing import IO, Any, Sequence

import numpy as np

from facemotion.analysis.grid import Grid

logger = logging.getLogger(__name__)


def _json_float(value: float) -> float | None:
    value = float(value)
    return value if math.isfinite(value) else None


class LandmarkValuesWriter:
    """Append-only JSON array of per-frame landmark records, flushed as they arrive.

    Each record is ``{"frameIndex", "timestampMs", "values", "points"}``. Non-finite
    values are written as ``null``. The array is closed on :meth:`close`, so a file
    left by an interrupted run is missing only its closing bracket.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def open(self) -> "LandmarkValuesWriter":
        if self._handle is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("w", encoding="utf-8")
        self._handle.write("[\n")
        self._count = 0
        return self

    def append(
        self,
        frame_index: int,
        timestamp_ms: int,
        values: Sequence[float] | np.ndarray,
        points: Sequence[Sequence[int]] | np.ndarray,
    ) -> None:
        record = {
            "frameIndex": int(frame_index),
            "timestampMs": int(timestamp_ms),
            "values": [_json_float(value) for value in np.asarray(values, dtype=np.float64).reshape(-1)],
            "points": [[int(x), int(y)] for x, y in np.asarray(points).reshape(-1, 2)],
        }
        with self._lock:
            if self._handle is None:
                raise RuntimeError(f"LandmarkValuesWriter is not open: {self.path}")
            if self._count:
                self._handle.write(",\n")
            self._handle.write(json.dumps(record))
            self._handle.flush()
            self._count += 1

    def close(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            self._handle.write("\n]\n")
            self._handle.close()
            self._handle = None
        logger.debug("Wrote %d landmark records to %s", self._count, self.path)

    def __enter__(self) -> "LandmarkValuesWriter":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def load_landmark_values(path: str | Path) -> list[dict[str, Any]]:
    values_path = Path(path)
    if not values_path.exists():
        raise FileNotFoundError(f"Landmark values file not found: {values_path}")
    payload = json.loads(values_path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"Landmark values file must hold a JSON array: {values_path}")
    return payload


def save_field_npz(path: str | Path, grid: Grid) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, np.ndarray] = {
        "grid_x": grid.grid_x,
        "grid_y": grid.grid_y,
        "disp_x": grid.disp_x,
        "disp_y": grid.disp_y,
        "disp_magnitude": grid.disp_magnitude,
    }
    if grid.reference_points is not None:
        payload["reference_points"] = grid.reference_points
    if grid.correlated_points is not None:
        payload["correlated_points"] = grid.correlated_points
    if grid.displacement is not None:
        payload["displacement"] = grid.displacement
    np.savez_compressed(out_path, **payload)
    return out_path


def save_heatmap_stack(
    path: str | Path,
    *,
    frame_indices: Sequence[int],
    timestamps_ms: Sequence[int],
    heatmaps: Sequence[np.ndarray],
) -> Path:
    """Store stabilized heatmaps as ``(frames, size_x, size_y)``; frames must share one grid shape."""
    if not (len(frame_indices) == len(timestamps_ms) == len(heatmaps)):
        raise ValueError("frame_indices, timestamps_ms and heatmaps must have the same length")
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if heatmaps:
        shapes = {np.asarray(item).shape for item in heatmaps}
        if len(shapes) != 1:
            raise ValueError(f"Heatmaps have inconsistent shapes: {sorted(shapes)}")
        stack = np.stack([np.asarray(item, dtype=np.float32) for item in heatmaps], axis=0)
    else:
        stack = np.empty((0, 0, 0), dtype=np.float32)
    np.savez_compressed(
        out_path,
        frame_indices=np.asarray(frame_indices, dtype=np.int64),
        timestamps_ms=np.asarray(timestamps_ms, dtype=np.int64),
        heatmaps=stack,
    )
    return out_path


def write_json(path: str | Path, payload: dict[str, Any]) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return out_path
