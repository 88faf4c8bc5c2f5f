from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from facemotion.errors import InsufficientCorrespondences, InvalidRegion


@dataclass(frozen=True)
class Roi:
    """Axis-aligned sampling box in pixel coordinates (max bounds exclusive for sampling)."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @classmethod
    def full_image(cls, width: int, height: int) -> "Roi":
        return cls(x_min=0.0, y_min=0.0, x_max=float(width), y_max=float(height))


@dataclass(frozen=True)
class GridAxisMeta:
    """Persisted description of one grid axis: first/last sample, sample count, window size."""

    min: float
    max: float
    count: int
    window_size: float

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min, self.max, float(self.count), self.window_size)


@dataclass
class Grid:
    grid_x: np.ndarray
    grid_y: np.ndarray
    window_size: tuple[float, float] = (0.0, 0.0)
    disp_x: np.ndarray = field(init=False)
    disp_y: np.ndarray = field(init=False)
    disp_magnitude: np.ndarray = field(init=False)
    reference_points: np.ndarray | None = None
    correlated_points: np.ndarray | None = None
    displacement: np.ndarray | None = None
    meta_info: str | None = None

    def __post_init__(self) -> None:
        self.grid_x = np.asarray(self.grid_x, dtype=np.float64)
        self.grid_y = np.asarray(self.grid_y, dtype=np.float64)
        if self.grid_x.ndim != 2 or self.grid_x.shape != self.grid_y.shape:
            raise ValueError("grid_x and grid_y must be 2D arrays of the same shape")
        self.disp_x = np.full(self.grid_x.shape, np.nan, dtype=np.float64)
        self.disp_y = np.full(self.grid_x.shape, np.nan, dtype=np.float64)
        self.disp_magnitude = np.full(self.grid_x.shape, np.nan, dtype=np.float64)

    @property
    def size_x(self) -> int:
        return int(self.grid_x.shape[0])

    @property
    def size_y(self) -> int:
        return int(self.grid_x.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.size_x, self.size_y)

    def points(self) -> np.ndarray:
        """Flatten sample coordinates to ``(size_x * size_y, 2)`` in row-major (x-outer) order."""
        return np.column_stack((self.grid_x.ravel(), self.grid_y.ravel()))

    def axis_meta(self) -> tuple[GridAxisMeta, GridAxisMeta]:
        meta_x = GridAxisMeta(
            min=float(self.grid_x[0, 0]),
            max=float(self.grid_x[-1, 0]),
            count=self.size_x,
            window_size=float(self.window_size[0]),
        )
        meta_y = GridAxisMeta(
            min=float(self.grid_y[0, 0]),
            max=float(self.grid_y[0, -1]),
            count=self.size_y,
            window_size=float(self.window_size[1]),
        )
        return meta_x, meta_y

    def add_raw_data(
        self,
        *,
        reference_points: np.ndarray,
        correlated_points: np.ndarray,
        displacement: np.ndarray,
    ) -> None:
        self.reference_points = np.asarray(reference_points, dtype=np.float64)
        self.correlated_points = np.asarray(correlated_points, dtype=np.float64)
        self.displacement = np.asarray(displacement, dtype=np.float64)

    def interpolate_displacement(
        self,
        points: np.ndarray,
        disp: np.ndarray,
        method: str = "raw",
    ) -> None:
        """Fill ``disp_x``, ``disp_y`` and ``disp_magnitude`` from per-point displacements.

        ``raw`` assumes ``points`` were sampled from this grid in ``points()`` order and
        scatters them one-to-one. The other methods resample with
        :func:`scipy.interpolate.griddata`, which tolerates dropped samples.
        """
        disp = np.asarray(disp, dtype=np.float64)
        if disp.ndim != 2 or disp.shape[1] != 2:
            raise ValueError(f"disp must have shape (N, 2), got {disp.shape}")

        if method == "raw":
            if disp.shape[0] != self.grid_x.size:
                raise ValueError(
                    f"raw interpolation needs one displacement per grid sample "
                    f"({self.grid_x.size}), got {disp.shape[0]}"
                )
            self.disp_x = disp[:, 0].reshape(self.shape).copy()
            self.disp_y = disp[:, 1].reshape(self.shape).copy()
        elif method in {"nearest", "linear", "cubic"}:
            from scipy.interpolate import griddata
            from scipy.spatial import QhullError

            points = np.asarray(points, dtype=np.float64)
            valid = np.isfinite(points).all(axis=1) & np.isfinite(disp).all(axis=1)
            if int(np.sum(valid)) < 3:
                raise InsufficientCorrespondences(
                    f"{method} interpolation needs at least 3 valid samples, got {int(np.sum(valid))}"
                )
            targets = (self.grid_x, self.grid_y)
            try:
                disp_x = griddata(points[valid], disp[valid, 0], targets, method=method)
                disp_y = griddata(points[valid], disp[valid, 1], targets, method=method)
            except QhullError as exc:
                raise InsufficientCorrespondences(
                    f"{method} interpolation failed on degenerate samples: {exc}"
                ) from exc
            self.disp_x = disp_x
            self.disp_y = disp_y
        else:
            raise ValueError(f"Unsupported interpolation method: {method}")

        self.disp_magnitude = np.sqrt(np.square(self.disp_x) + np.square(self.disp_y))


def _axis_count(lo: float, hi: float, step: float, axis: str) -> int:
    if hi <= lo:
        raise InvalidRegion(f"{axis}max must be greater than {axis}min, got [{lo}, {hi}]")
    if step <= 0:
        raise InvalidRegion(f"{axis} grid spacing must be positive, got: {step}")
    count = int(math.ceil((hi - lo) / step))
    if count < 2:
        raise InvalidRegion(
            f"{axis} axis yields {count} sample(s) for range [{lo}, {hi}] and spacing {step}; at least 2 are required"
        )
    return count


def mgrid(
    xmin: float,
    xmax: float,
    xnum: int,
    ymin: float,
    ymax: float,
    ynum: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(grid_x, grid_y)`` of shape ``(xnum, ynum)`` with inclusive endpoints."""
    xnum = int(xnum)
    ynum = int(ynum)
    if xnum < 2 or ynum < 2:
        raise InvalidRegion(f"mgrid needs at least 2 samples per axis, got xnum={xnum}, ynum={ynum}")
    if xmax <= xmin or ymax <= ymin:
        raise InvalidRegion(f"mgrid needs max > min on both axes, got x=[{xmin}, {xmax}], y=[{ymin}, {ymax}]")

    x_step = (xmax - xmin) / float(xnum - 1)
    y_step = (ymax - ymin) / float(ynum - 1)
    xs = xmin + np.arange(xnum, dtype=np.float64) * x_step
    ys = ymin + np.arange(ynum, dtype=np.float64) * y_step
    grid_x, grid_y = np.meshgrid(xs, ys, indexing="ij")
    return grid_x, grid_y


def build_grid(
    x_range: tuple[float, float],
    y_range: tuple[float, float],
    spacing: tuple[float, float],
    window_size: tuple[float, float] = (0.0, 0.0),
) -> Grid:
    xmin, xmax = float(x_range[0]), float(x_range[1])
    ymin, ymax = float(y_range[0]), float(y_range[1])
    sx, sy = float(spacing[0]), float(spacing[1])
    xnum = _axis_count(xmin, xmax, sx, "x")
    ynum = _axis_count(ymin, ymax, sy, "y")

    xs = xmin + np.arange(xnum, dtype=np.float64) * sx
    ys = ymin + np.arange(ynum, dtype=np.float64) * sy
    grid_x, grid_y = np.meshgrid(xs, ys, indexing="ij")
    return Grid(grid_x=grid_x, grid_y=grid_y, window_size=(float(window_size[0]), float(window_size[1])))


def build_grid_for_roi(
    roi: Roi,
    spacing: tuple[float, float],
    window_size: tuple[float, float] = (0.0, 0.0),
) -> Grid:
    return build_grid((roi.x_min, roi.x_max), (roi.y_min, roi.y_max), spacing, window_size)


def grid_from_meta(meta_x: GridAxisMeta, meta_y: GridAxisMeta) -> Grid:
    grid_x, grid_y = mgrid(meta_x.min, meta_x.max, meta_x.count, meta_y.min, meta_y.max, meta_y.count)
    return Grid(grid_x=grid_x, grid_y=grid_y, window_size=(meta_x.window_size, meta_y.window_size))


def remove_points_outside(points: np.ndarray, roi: Roi) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    if points.size == 0:
        return points.reshape(0, 2)
    inside = (
        (points[:, 0] >= roi.x_min)
        & (points[:, 0] <= roi.x_max)
        & (points[:, 1] >= roi.y_min)
        & (points[:, 1] <= roi.y_max)
    )
    return points[inside]


def _meta_to_json(meta: GridAxisMeta) -> dict[str, Any]:
    return {"min": meta.min, "max": meta.max, "count": meta.count, "window_size": meta.window_size}


def save_grid_meta(path: str | Path, meta_x: GridAxisMeta, meta_y: GridAxisMeta) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"x": _meta_to_json(meta_x), "y": _meta_to_json(meta_y)}
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return out_path


def load_grid_meta(path: str | Path) -> tuple[GridAxisMeta, GridAxisMeta]:
    meta_path = Path(path)
    if not meta_path.exists():
        raise FileNotFoundError(f"Grid metadata file not found: {meta_path}")
    payload = json.loads(meta_path.read_text(encoding="utf-8"))

    axes: list[GridAxisMeta] = []
    for axis in ("x", "y"):
        if axis not in payload:
            raise ValueError(f"grid metadata is missing axis '{axis}': {meta_path}")
        entry = payload[axis]
        for key in ("min", "max", "count", "window_size"):
            if key not in entry:
                raise ValueError(f"grid metadata axis '{axis}' is missing field '{key}': {meta_path}")
        axes.append(
            GridAxisMeta(
                min=float(entry["min"]),
                max=float(entry["max"]),
                count=int(entry["count"]),
                window_size=float(entry["window_size"]),
            )
        )
    return axes[0], axes[1]
