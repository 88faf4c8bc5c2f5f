from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest

from facemotion.analysis.grid import GridAxisMeta
from facemotion.viz.heatmap import (
    jet_color_map,
    overlay_heatmap,
    place_heatmap,
    render_heatmap,
    save_heatmap_png,
)


def test_jet_color_map_anchor_points() -> None:
    colors = jet_color_map(np.asarray([0.0, 0.5, 1.0]))

    assert np.allclose(colors[0], [0.0, 0.0, 0.5])
    assert np.allclose(colors[1], [0.5, 1.0, 0.5])
    assert np.allclose(colors[2], [0.5, 0.0, 0.0])
    assert colors.min() >= 0.0
    assert colors.max() <= 1.0


def test_render_heatmap_transposes_and_normalizes() -> None:
    values = np.asarray(
        [
            [0.0, 1.0],
            [np.nan, 2.0],
            [4.0, 0.5],
        ]
    )

    rgba = render_heatmap(values, overlay_alpha=0.4)

    assert rgba.shape == (2, 3, 4)
    assert rgba.dtype == np.uint8
    # Zero and NaN cells are fully transparent.
    assert rgba[0, 0].tolist() == [0, 0, 0, 0]
    assert rgba[0, 1].tolist() == [0, 0, 0, 0]
    # The global maximum maps to the top of the color scale.
    assert rgba[0, 2].tolist() == [128, 0, 0, 102]
    assert rgba[1, 1, 3] == 102
    assert rgba[1, 1, 1] == 255


def test_render_heatmap_all_zero_is_transparent() -> None:
    rgba = render_heatmap(np.zeros((4, 3)))
    assert rgba.shape == (3, 4, 4)
    assert not rgba.any()


def test_render_heatmap_rejects_non_grid() -> None:
    with pytest.raises(ValueError, match="2D"):
        render_heatmap(np.zeros(5))


def test_overlay_with_transparent_heatmap_keeps_frame() -> None:
    frame = np.full((40, 60, 3), 90, dtype=np.uint8)
    heatmap = np.zeros((4, 6, 4), dtype=np.uint8)

    out = overlay_heatmap(frame, heatmap)

    assert out.shape == frame.shape
    assert np.array_equal(out, frame)


def test_overlay_blends_visible_cells() -> None:
    frame = np.zeros((2, 2, 3), dtype=np.uint8)
    heatmap = np.zeros((2, 2, 4), dtype=np.uint8)
    heatmap[0, 0] = [255, 255, 255, 255]

    out = overlay_heatmap(frame, heatmap, opacity=0.3)

    assert out[0, 0].tolist() == [76, 76, 76]
    assert out[1, 1].tolist() == [0, 0, 0]


def test_save_heatmap_png_keeps_alpha(tmp_path: Path) -> None:
    rgba = render_heatmap(np.asarray([[0.0, 1.0], [2.0, 3.0]]))
    out_path = save_heatmap_png(tmp_path / "out" / "heatmap.png", rgba)

    loaded = cv2.imread(str(out_path), cv2.IMREAD_UNCHANGED)

    assert loaded.shape == (2, 2, 4)
    assert np.array_equal(cv2.cvtColor(loaded, cv2.COLOR_BGRA2RGBA), rgba)


def test_overlay_centres_cells_on_grid_samples() -> None:
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    heatmap = np.zeros((3, 4, 4), dtype=np.uint8)
    heatmap[0, 1] = [255, 255, 255, 255]
    meta = (
        GridAxisMeta(min=0.0, max=60.0, count=4, window_size=85.0),
        GridAxisMeta(min=0.0, max=40.0, count=3, window_size=85.0),
    )

    out = overlay_heatmap(frame, heatmap, opacity=1.0, grid_meta=meta)

    # Sample x=20 owns columns 10..29; sample y=0 owns rows 0..9.
    assert out[0, 20].tolist() == [255, 255, 255]
    assert out[0, 10].tolist() == [255, 255, 255]
    assert out[0, 29].tolist() == [255, 255, 255]
    assert out[0, 9].tolist() == [0, 0, 0]
    assert out[0, 30].tolist() == [0, 0, 0]
    assert out[10, 20].tolist() == [0, 0, 0]


def test_place_heatmap_leaves_pixels_outside_roi_grid_transparent() -> None:
    heatmap = np.full((2, 2, 4), 255, dtype=np.uint8)
    meta = (
        GridAxisMeta(min=20.0, max=30.0, count=2, window_size=0.0),
        GridAxisMeta(min=20.0, max=30.0, count=2, window_size=0.0),
    )

    placed = place_heatmap(heatmap, width=64, height=48, grid_meta=meta)

    assert placed.shape == (48, 64, 4)
    assert placed[20, 20, 3] == 255
    assert placed[34, 34, 3] == 255
    assert placed[0, 0, 3] == 0
    assert placed[14, 25, 3] == 0
    assert placed[40, 40, 3] == 0


def test_place_heatmap_rejects_mismatched_grid() -> None:
    meta = (
        GridAxisMeta(min=0.0, max=60.0, count=4, window_size=0.0),
        GridAxisMeta(min=0.0, max=40.0, count=3, window_size=0.0),
    )
    with pytest.raises(ValueError, match="does not match grid"):
        place_heatmap(np.zeros((4, 3, 4), dtype=np.uint8), width=64, height=48, grid_meta=meta)
