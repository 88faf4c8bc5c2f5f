from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from facemotion.analysis.aggregation import LandmarkAggregator
from facemotion.analysis.grid import (
    Grid,
    GridAxisMeta,
    Roi,
    build_grid_for_roi,
    grid_from_meta,
    remove_points_outside,
)
from facemotion.analysis.rigid import remove_rigid_motion
from facemotion.errors import TrackingUnavailable
from facemotion.tracking.base import PointTracker

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = (85, 85)
DEFAULT_GRID_SPACING = (20, 20)


@dataclass(frozen=True)
class TrackedSequence:
    meta_x: GridAxisMeta
    meta_y: GridAxisMeta
    point_lists: list[np.ndarray]


@dataclass(frozen=True)
class FieldResult:
    grid: Grid
    query_values: np.ndarray
    query_points: np.ndarray


def _image_size(image: np.ndarray) -> tuple[int, int]:
    arr = np.asarray(image)
    if arr.ndim < 2:
        raise ValueError(f"Image must be at least 2D, got shape {arr.shape}")
    return int(arr.shape[1]), int(arr.shape[0])


def outside_mask(mask: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """True where ``(x, y)`` lands on a black mask pixel; coordinates off the mask are never outside."""
    mask_arr = np.asarray(mask)
    height, width = mask_arr.shape[:2]
    px = np.floor(np.asarray(xs, dtype=np.float64)).astype(np.int64)
    py = np.floor(np.asarray(ys, dtype=np.float64)).astype(np.int64)
    in_bounds = (px >= 0) & (py >= 0) & (px < width) & (py < height)

    result = np.zeros(px.shape, dtype=bool)
    if not in_bounds.any():
        return result
    pixels = mask_arr[py[in_bounds], px[in_bounds]]
    if pixels.ndim == 1:
        black = pixels == 0
    else:
        black = np.all(pixels[..., :3] == 0, axis=-1)
    result[in_bounds] = black
    return result


def zero_outside_mask(grid: Grid, mask: np.ndarray) -> int:
    outside = outside_mask(mask, grid.grid_x, grid.grid_y)
    grid.disp_magnitude[outside] = 0.0
    return int(np.sum(outside))


def apply_mask(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Blank every pixel that is black in ``mask``."""
    image_arr = np.asarray(image)
    mask_arr = np.asarray(mask)
    if image_arr.shape[:2] != mask_arr.shape[:2]:
        raise ValueError(f"Mask size {mask_arr.shape[:2]} does not match image size {image_arr.shape[:2]}")
    if mask_arr.ndim == 2:
        keep = mask_arr != 0
    else:
        keep = np.any(mask_arr[..., :3] != 0, axis=-1)
    out = image_arr.copy()
    out[~keep] = 0
    return out


def track_sequence(
    images: Sequence[np.ndarray],
    tracker: PointTracker,
    *,
    roi: Roi | None = None,
    window_size: tuple[int, int] = DEFAULT_WINDOW_SIZE,
    grid_spacing: tuple[int, int] = DEFAULT_GRID_SPACING,
) -> TrackedSequence:
    """Sample a grid over ``roi`` and track it from image 0 into every later image."""
    if len(images) < 2:
        raise ValueError(f"At least 2 images are required, got {len(images)}")

    width, height = _image_size(images[0])
    region = roi or Roi.full_image(width, height)
    grid = build_grid_for_roi(region, grid_spacing, window_size)
    points = remove_points_outside(grid.points(), region)
    meta_x, meta_y = grid.axis_meta()

    point_lists: list[np.ndarray] = [points]
    for idx in range(1, len(images)):
        tracked = np.asarray(tracker.track(images[0], images[idx], points), dtype=np.float64)
        if tracked.shape != points.shape:
            raise TrackingUnavailable(
                f"Tracker returned {tracked.shape} points for {points.shape} queries (pair 0->{idx})"
            )
        point_lists.append(tracked)

    logger.debug(
        "Tracked %d grid points (%dx%d) across %d image pair(s)",
        points.shape[0],
        meta_x.count,
        meta_y.count,
        len(images) - 1,
    )
    return TrackedSequence(meta_x=meta_x, meta_y=meta_y, point_lists=point_lists)


def field_from_tracks(
    meta_x: GridAxisMeta,
    meta_y: GridAxisMeta,
    point_lists: Sequence[np.ndarray],
    *,
    mask: np.ndarray | None = None,
    query_points: np.ndarray | None = None,
    pair_index: int = 1,
    interpolation: str = "raw",
) -> FieldResult:
    """Rebuild the grid from metadata and fill it with rigid-corrected displacement magnitudes."""
    if pair_index < 1 or pair_index >= len(point_lists):
        raise ValueError(f"pair_index out of range: {pair_index} (point lists: {len(point_lists)})")

    grid = grid_from_meta(meta_x, meta_y)
    reference = np.asarray(point_lists[0], dtype=np.float64)
    current = np.asarray(point_lists[pair_index], dtype=np.float64)
    disp = remove_rigid_motion(reference, current)

    grid.add_raw_data(reference_points=reference, correlated_points=current, displacement=disp)
    grid.interpolate_displacement(reference, disp, method=interpolation)
    if mask is not None:
        zeroed = zero_outside_mask(grid, mask)
        logger.debug("Face mask zeroed %d of %d grid cells", zeroed, grid.grid_x.size)

    if query_points is None:
        queries = np.empty((0, 2), dtype=np.float64)
    else:
        queries = np.asarray(query_points, dtype=np.float64).reshape(-1, 2)
    values = LandmarkAggregator.from_grid(grid).values_at(queries)
    return FieldResult(grid=grid, query_values=values, query_points=queries)


def compute_field(
    reference_image: np.ndarray,
    current_image: np.ndarray,
    mask: np.ndarray | None,
    tracker: PointTracker,
    *,
    roi: Roi | None = None,
    window_size: tuple[int, int] = DEFAULT_WINDOW_SIZE,
    grid_spacing: tuple[int, int] = DEFAULT_GRID_SPACING,
    query_points: np.ndarray | None = None,
    interpolation: str = "raw",
) -> FieldResult:
    sequence = track_sequence(
        [reference_image, current_image],
        tracker,
        roi=roi,
        window_size=window_size,
        grid_spacing=grid_spacing,
    )
    return field_from_tracks(
        sequence.meta_x,
        sequence.meta_y,
        sequence.point_lists,
        mask=mask,
        query_points=query_points,
        interpolation=interpolation,
    )
