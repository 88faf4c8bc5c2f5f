from __future__ import annotations

import numpy as np
import pytest

from facemotion.analysis.rigid import (
    apply_rigid_transform,
    estimate_rigid_transform,
    remove_rigid_motion,
)
from facemotion.errors import DegenerateAlignment, FaceMotionError, InsufficientCorrespondences


def _rotation(degrees: float) -> np.ndarray:
    theta = np.deg2rad(degrees)
    return np.asarray([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])


def test_pure_translation_leaves_zero_residual() -> None:
    reference = np.asarray([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    current = np.asarray([[1.0, 0.0], [11.0, 0.0], [1.0, 10.0]])

    residual = remove_rigid_motion(reference, current)

    assert np.allclose(residual, 0.0, atol=1e-9)


@pytest.mark.parametrize("degrees", [0.0, 7.5, 33.0, -120.0, 179.0])
def test_rigid_motion_is_removed_for_any_rotation(degrees: float) -> None:
    rng = np.random.default_rng(7)
    reference = rng.uniform(0.0, 200.0, size=(40, 2))
    rotation = _rotation(degrees)
    translation = np.asarray([14.0, -6.5])
    current = (rotation @ reference.T).T + translation

    residual = remove_rigid_motion(reference, current)

    assert np.allclose(residual, 0.0, atol=1e-6)


def test_estimate_recovers_known_transform() -> None:
    reference = np.asarray([[0.0, 0.0], [2.0, 0.5], [1.0, 2.0], [3.0, 1.5]])
    rotation = _rotation(21.0)
    translation = np.asarray([14.0, -6.0])
    current = (rotation @ reference.T).T + translation

    transform = estimate_rigid_transform(reference, current)

    assert transform.valid_count == 4
    assert not transform.degenerate
    assert np.allclose(transform.rotation, rotation, atol=1e-9)
    assert np.allclose(transform.translation, translation, atol=1e-9)
    assert np.allclose(apply_rigid_transform(reference, transform), current, atol=1e-9)


def test_mirrored_points_still_give_proper_rotation() -> None:
    reference = np.asarray([[0.0, 0.0], [4.0, 0.0], [0.0, 2.0], [3.0, 3.0]])
    current = reference * np.asarray([-1.0, 1.0])

    transform = estimate_rigid_transform(reference, current)

    assert np.linalg.det(transform.rotation) == pytest.approx(1.0)
    assert np.allclose(transform.rotation @ transform.rotation.T, np.eye(2), atol=1e-9)


def test_local_deformation_survives_alignment() -> None:
    grid = np.stack(np.meshgrid(np.arange(5.0), np.arange(5.0), indexing="ij"), axis=-1).reshape(-1, 2) * 10.0
    current = grid + np.asarray([3.0, -2.0])
    current[12] += np.asarray([2.0, 0.0])

    residual = remove_rigid_motion(grid, current)
    magnitude = np.linalg.norm(residual, axis=1)

    assert int(np.argmax(magnitude)) == 12
    assert magnitude[12] > 1.5


def test_nan_rows_are_preserved_and_isolated() -> None:
    rng = np.random.default_rng(3)
    reference = rng.uniform(0.0, 100.0, size=(12, 2))
    current = (_rotation(12.0) @ reference.T).T + np.asarray([2.0, 5.0])
    current += rng.normal(0.0, 0.5, size=current.shape)

    invalid = np.asarray([1, 4, 9])
    reference_nan = reference.copy()
    current_nan = current.copy()
    reference_nan[1] = np.nan
    current_nan[[4, 9]] = np.nan

    residual = remove_rigid_motion(reference_nan, current_nan)
    valid = np.setdiff1d(np.arange(12), invalid)
    expected = remove_rigid_motion(reference[valid], current[valid])

    assert np.isnan(residual[invalid]).all()
    assert np.isfinite(residual[valid]).all()
    assert np.allclose(residual[valid], expected)


def test_single_coordinate_nan_is_rejected() -> None:
    reference = np.asarray([[0.0, 0.0], [1.0, 1.0], [2.0, 0.0]])
    current = reference.copy()
    current[1, 0] = np.nan

    with pytest.raises(ValueError, match="only one coordinate"):
        remove_rigid_motion(reference, current)


def test_shape_mismatch_is_rejected() -> None:
    with pytest.raises(ValueError, match="same shape"):
        estimate_rigid_transform(np.zeros((3, 2)), np.zeros((4, 2)))


def test_fewer_than_two_correspondences_raise() -> None:
    reference = np.asarray([[0.0, 0.0], [5.0, 5.0], [np.nan, np.nan]])
    current = np.asarray([[1.0, 1.0], [np.nan, np.nan], [3.0, 3.0]])

    with pytest.raises(InsufficientCorrespondences) as exc_info:
        remove_rigid_motion(reference, current)
    assert isinstance(exc_info.value, FaceMotionError)


def test_zero_variance_points_warn_and_fall_back_to_identity() -> None:
    reference = np.full((3, 2), 5.0)
    current = np.full((3, 2), 7.0)

    with pytest.warns(DegenerateAlignment):
        transform = estimate_rigid_transform(reference, current)

    assert transform.degenerate
    assert np.allclose(transform.rotation, np.eye(2))
    assert np.allclose(transform.translation, [2.0, 2.0])
