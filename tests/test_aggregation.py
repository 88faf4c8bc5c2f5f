from __future__ import annotations

import numpy as np
import pytest

from facemotion.analysis.aggregation import LandmarkAggregator, build_index, nearest, nearest_indices
from facemotion.analysis.grid import build_grid


def test_coincident_query_returns_that_sample() -> None:
    grid = build_grid((0.0, 50.0), (0.0, 40.0), (10.0, 10.0))
    grid.disp_magnitude = np.arange(grid.grid_x.size, dtype=np.float64).reshape(grid.shape)
    aggregator = LandmarkAggregator.from_grid(grid)

    for k, point in enumerate(grid.points()):
        assert aggregator.values_at(point[None, :])[0] == float(k)


def test_midpoint_tie_goes_to_lowest_index() -> None:
    points = np.asarray([[0.0, 0.0], [10.0, 0.0], [20.0, 0.0], [10.0, 10.0]])
    aggregator = LandmarkAggregator(points, np.asarray([1.0, 2.0, 3.0, 4.0]))

    values = aggregator.values_at(np.asarray([[5.0, 0.0], [15.0, 0.0], [5.0, 0.0]]))

    assert values.tolist() == [1.0, 2.0, 1.0]


def test_equidistant_from_four_samples_is_deterministic() -> None:
    grid = build_grid((0.0, 30.0), (0.0, 30.0), (10.0, 10.0))
    index = build_index(grid.points())

    first = nearest_indices(index, np.asarray([[15.0, 15.0]]))
    second = nearest_indices(index, np.asarray([[15.0, 15.0]]))

    # (10, 10) is sample 4; (10, 20), (20, 10), (20, 20) are 5, 7, 8.
    assert first.tolist() == [4]
    assert second.tolist() == [4]


def test_nearest_returns_grid_point() -> None:
    index = build_index(np.asarray([[0.0, 0.0], [10.0, 10.0], [20.0, 0.0]]))
    assert nearest(index, (9.0, 8.0)).tolist() == [10.0, 10.0]
    assert nearest(index, np.asarray([19.0, -3.0])).tolist() == [20.0, 0.0]


def test_nan_values_are_returned_as_is() -> None:
    aggregator = LandmarkAggregator(np.asarray([[0.0, 0.0], [10.0, 0.0]]), np.asarray([np.nan, 0.5]))
    values = aggregator.values_at(np.asarray([[1.0, 0.0], [9.0, 0.0]]))
    assert np.isnan(values[0])
    assert values[1] == 0.5


def test_empty_query_returns_empty() -> None:
    aggregator = LandmarkAggregator(np.asarray([[0.0, 0.0], [1.0, 1.0]]), np.asarray([0.1, 0.2]))
    assert aggregator.values_at(np.empty((0, 2))).shape == (0,)


def test_single_sample_index() -> None:
    aggregator = LandmarkAggregator(np.asarray([[3.0, 4.0]]), np.asarray([0.7]))
    assert aggregator.values_at(np.asarray([[100.0, -50.0]])).tolist() == [0.7]


def test_rejects_mismatched_values() -> None:
    with pytest.raises(ValueError, match="must match grid point count"):
        LandmarkAggregator(np.zeros((3, 2)), np.zeros(2))


def test_rejects_empty_index() -> None:
    with pytest.raises(ValueError, match="zero points"):
        build_index(np.empty((0, 2)))
