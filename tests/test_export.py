from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from facemotion.analysis.grid import build_grid
from facemotion.io.export import (
    LandmarkValuesWriter,
    load_landmark_values,
    save_field_npz,
    save_heatmap_stack,
)


def test_landmark_writer_streams_records_in_order(tmp_path: Path) -> None:
    out_path = tmp_path / "artifacts" / "landmark_values.json"

    with LandmarkValuesWriter(out_path) as writer:
        writer.append(0, 0, [0.5, np.nan], [[10, 20], [11, 21]])
        writer.append(3, 100, np.asarray([1.25]), np.asarray([[5, 6]]))
        assert writer.count == 2

    records = load_landmark_values(out_path)

    assert records == [
        {"frameIndex": 0, "timestampMs": 0, "values": [0.5, None], "points": [[10, 20], [11, 21]]},
        {"frameIndex": 3, "timestampMs": 100, "values": [1.25], "points": [[5, 6]]},
    ]


def test_landmark_writer_with_no_records_is_empty_array(tmp_path: Path) -> None:
    out_path = tmp_path / "landmark_values.json"
    with LandmarkValuesWriter(out_path):
        pass

    assert json.loads(out_path.read_text(encoding="utf-8")) == []


def test_landmark_writer_requires_open(tmp_path: Path) -> None:
    writer = LandmarkValuesWriter(tmp_path / "values.json")
    with pytest.raises(RuntimeError, match="not open"):
        writer.append(0, 0, [0.1], [[1, 1]])


def test_load_landmark_values_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Landmark values file not found"):
        load_landmark_values(tmp_path / "missing.json")


def test_save_field_npz_layout(tmp_path: Path) -> None:
    grid = build_grid((0.0, 30.0), (0.0, 20.0), (10.0, 10.0))
    points = grid.points()
    disp = np.ones_like(points)
    grid.add_raw_data(reference_points=points, correlated_points=points + disp, displacement=disp)
    grid.interpolate_displacement(points, disp)

    out_path = save_field_npz(tmp_path / "field.npz", grid)

    with np.load(out_path) as data:
        assert set(data.files) == {
            "grid_x",
            "grid_y",
            "disp_x",
            "disp_y",
            "disp_magnitude",
            "reference_points",
            "correlated_points",
            "displacement",
        }
        assert data["disp_magnitude"].shape == (3, 2)
        assert np.allclose(data["disp_magnitude"], np.sqrt(2.0))


def test_save_heatmap_stack(tmp_path: Path) -> None:
    heatmaps = [np.zeros((4, 3)), np.ones((4, 3))]

    out_path = save_heatmap_stack(
        tmp_path / "heatmaps.npz",
        frame_indices=[0, 2],
        timestamps_ms=[0, 67],
        heatmaps=heatmaps,
    )

    with np.load(out_path) as data:
        assert data["heatmaps"].shape == (2, 4, 3)
        assert data["heatmaps"].dtype == np.float32
        assert data["frame_indices"].tolist() == [0, 2]
        assert data["timestamps_ms"].tolist() == [0, 67]


def test_save_heatmap_stack_rejects_mixed_shapes(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="inconsistent shapes"):
        save_heatmap_stack(
            tmp_path / "heatmaps.npz",
            frame_indices=[0, 1],
            timestamps_ms=[0, 33],
            heatmaps=[np.zeros((2, 2)), np.zeros((3, 2))],
        )
