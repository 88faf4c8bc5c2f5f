from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np

from facemotion.analysis.grid import GridAxisMeta

DEFAULT_OVERLAY_ALPHA = 0.4
DEFAULT_BLEND_OPACITY = 0.3


def jet_color_map(values: np.ndarray) -> np.ndarray:
    """Piecewise-linear jet colors in ``[0, 1]`` for values in ``[0, 1]``; shape ``values.shape + (3,)``."""
    t = 4.0 * np.asarray(values, dtype=np.float64)
    red = np.clip(np.minimum(t - 1.5, -t + 4.5), 0.0, 1.0)
    green = np.clip(np.minimum(t - 0.5, -t + 3.5), 0.0, 1.0)
    blue = np.clip(np.minimum(t + 0.5, -t + 2.5), 0.0, 1.0)
    return np.stack((red, green, blue), axis=-1)


def render_heatmap(values: np.ndarray, overlay_alpha: float = DEFAULT_OVERLAY_ALPHA) -> np.ndarray:
    """Render an ``(x, y)`` magnitude grid as an RGBA image with rows along y.

    Values are normalized by the global maximum. Zero and NaN cells are fully transparent.
    """
    grid = np.asarray(values, dtype=np.float64)
    if grid.ndim != 2:
        raise ValueError(f"values must be a 2D grid, got shape {grid.shape}")
    if not 0.0 <= overlay_alpha <= 1.0:
        raise ValueError(f"overlay_alpha must be in [0, 1], got: {overlay_alpha}")

    image = grid.T
    rgba = np.zeros(image.shape + (4,), dtype=np.uint8)
    finite = np.isfinite(image)
    if not finite.any():
        return rgba
    peak = float(np.max(image[finite]))
    if peak <= 0:
        return rgba

    normalized = np.where(finite, image / peak, 0.0)
    visible = finite & (normalized != 0)
    colors = np.round(jet_color_map(normalized) * 255.0).astype(np.uint8)
    rgba[..., :3] = np.where(visible[..., None], colors, 0)
    rgba[..., 3] = np.where(visible, int(round(overlay_alpha * 255)), 0).astype(np.uint8)
    return rgba


def _sample_lookup(meta: GridAxisMeta, size: int) -> tuple[np.ndarray, np.ndarray]:
    """Nearest grid sample for each pixel along one axis, and whether the pixel is inside a cell."""
    step = (meta.max - meta.min) / float(meta.count - 1) if meta.count > 1 else 1.0
    pixels = np.arange(size, dtype=np.float64)
    idx = np.floor((pixels - meta.min) / step + 0.5).astype(np.int64)
    inside = (idx >= 0) & (idx < meta.count)
    return np.clip(idx, 0, meta.count - 1), inside


def place_heatmap(
    heatmap_rgba: np.ndarray,
    width: int,
    height: int,
    grid_meta: tuple[GridAxisMeta, GridAxisMeta],
) -> np.ndarray:
    """Expand a rendered ``(y, x)`` heatmap to frame size with each cell centred on its grid sample."""
    meta_x, meta_y = grid_meta
    heatmap = np.asarray(heatmap_rgba, dtype=np.uint8)
    if heatmap.shape[:2] != (meta_y.count, meta_x.count):
        raise ValueError(
            f"heatmap shape {heatmap.shape[:2]} does not match grid ({meta_y.count}, {meta_x.count})"
        )
    col_idx, col_inside = _sample_lookup(meta_x, width)
    row_idx, row_inside = _sample_lookup(meta_y, height)
    placed = heatmap[row_idx[:, None], col_idx[None, :]].copy()
    placed[~(row_inside[:, None] & col_inside[None, :])] = 0
    return placed


def overlay_heatmap(
    frame_rgb: np.ndarray,
    heatmap_rgba: np.ndarray,
    opacity: float = DEFAULT_BLEND_OPACITY,
    *,
    grid_meta: tuple[GridAxisMeta, GridAxisMeta] | None = None,
) -> np.ndarray:
    """Composite ``heatmap_rgba`` over ``frame_rgb``.

    With ``grid_meta`` each cell covers the pixels nearest its grid sample and
    pixels beyond the grid stay untouched. Without it the heatmap is stretched
    over the whole frame.
    """
    frame = np.asarray(frame_rgb)
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"frame_rgb must have shape (H, W, 3), got {frame.shape}")
    heatmap = np.asarray(heatmap_rgba, dtype=np.uint8)
    height, width = frame.shape[:2]
    if grid_meta is not None:
        heatmap = place_heatmap(heatmap, width, height, grid_meta)
    elif heatmap.shape[:2] != (height, width):
        heatmap = cv2.resize(heatmap, (width, height), interpolation=cv2.INTER_NEAREST)

    weight = float(opacity) * (heatmap[..., 3:4].astype(np.float64) / 255.0)
    blended = frame.astype(np.float64) * (1.0 - weight) + heatmap[..., :3].astype(np.float64) * weight
    return np.clip(np.round(blended), 0, 255).astype(np.uint8)


def save_heatmap_png(path: str | Path, image: np.ndarray) -> Path:
    """Write an RGBA heatmap or an RGB composite to ``path``."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    arr = np.ascontiguousarray(image, dtype=np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 4:
        encoded = cv2.cvtColor(arr, cv2.COLOR_RGBA2BGRA)
    elif arr.ndim == 3 and arr.shape[2] == 3:
        encoded = cv2.cvtColor(arr, cv2.COLOR_RGB2BGR)
    else:
        raise ValueError(f"Expected an RGB or RGBA image, got shape {arr.shape}")
    if not cv2.imwrite(str(out_path), encoded):
        raise RuntimeError(f"Failed to write heatmap image: {out_path}")
    return out_path
