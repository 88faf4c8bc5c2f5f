from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np

from facemotion.errors import DegenerateAlignment, InsufficientCorrespondences

logger = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 2
DEGENERATE_VARIANCE = 1e-12


@dataclass(frozen=True)
class RigidTransform:
    rotation: np.ndarray
    translation: np.ndarray
    valid_count: int
    degenerate: bool = False


def _as_point_set(points: np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N, 2), got {arr.shape}")
    nan_x = np.isnan(arr[:, 0])
    nan_y = np.isnan(arr[:, 1])
    mismatched = np.flatnonzero(nan_x != nan_y)
    if mismatched.size:
        raise ValueError(f"{name} has NaN in only one coordinate at index {int(mismatched[0])}")
    return arr


def valid_correspondences(reference: np.ndarray, current: np.ndarray) -> np.ndarray:
    """Boolean mask of indices that are finite in both point sets."""
    return np.isfinite(reference).all(axis=1) & np.isfinite(current).all(axis=1)


def estimate_rigid_transform(reference: np.ndarray, current: np.ndarray) -> RigidTransform:
    """Least-squares rotation + translation mapping ``reference`` onto ``current`` (Kabsch).

    Rows with NaN in either set are ignored. The rotation is always proper
    (det = +1): a reflection returned by the SVD is corrected by flipping the
    last row of ``V^T``.
    """
    ref = _as_point_set(reference, "reference")
    cur = _as_point_set(current, "current")
    if ref.shape != cur.shape:
        raise ValueError("reference and current must have the same shape")

    valid = valid_correspondences(ref, cur)
    valid_count = int(np.sum(valid))
    if valid_count < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondences(
            f"At least {MIN_CORRESPONDENCES} valid correspondences are required, got {valid_count}"
        )

    src = ref[valid]
    dst = cur[valid]
    src_mean = np.mean(src, axis=0)
    dst_mean = np.mean(dst, axis=0)
    src_centered = src - src_mean
    dst_centered = dst - dst_mean

    var_src = float(np.mean(np.sum(src_centered**2, axis=1)))
    var_dst = float(np.mean(np.sum(dst_centered**2, axis=1)))
    degenerate = var_src <= DEGENERATE_VARIANCE or var_dst <= DEGENERATE_VARIANCE
    if degenerate:
        logger.warning(
            "Degenerate rigid alignment: point variance is ~0 (ref=%.3g, cur=%.3g, n=%d)",
            var_src,
            var_dst,
            valid_count,
        )
        warnings.warn(
            "Point set has near-zero variance; rotation estimate is arbitrary",
            DegenerateAlignment,
            stacklevel=2,
        )

    cov = src_centered.T @ dst_centered
    if not np.any(cov):
        rotation = np.eye(2)
    else:
        u, _, vt = np.linalg.svd(cov)
        rotation = vt.T @ u.T
        if np.linalg.det(rotation) < 0:
            logger.debug("Reflection detected in rigid alignment; correcting")
            vt[-1, :] *= -1.0
            rotation = vt.T @ u.T

    translation = dst_mean - rotation @ src_mean
    return RigidTransform(
        rotation=rotation,
        translation=translation,
        valid_count=valid_count,
        degenerate=degenerate,
    )


def apply_rigid_transform(points: np.ndarray, transform: RigidTransform) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    out = np.full(points.shape, np.nan, dtype=np.float64)
    valid = np.isfinite(points).all(axis=1)
    if valid.any():
        out[valid] = (transform.rotation @ points[valid].T).T + transform.translation
    return out


def remove_rigid_motion(reference: np.ndarray, current: np.ndarray) -> np.ndarray:
    """Return ``current`` minus its rigidly predicted position, per index.

    The global rotation + translation that best explains the move from
    ``reference`` to ``current`` is fitted on valid rows only, so the residual
    keeps the local (non-rigid) deformation. Rows that are NaN in either input
    come back as ``(NaN, NaN)``.
    """
    ref = _as_point_set(reference, "reference")
    cur = _as_point_set(current, "current")
    transform = estimate_rigid_transform(ref, cur)

    valid = valid_correspondences(ref, cur)
    residual = np.full(ref.shape, np.nan, dtype=np.float64)
    predicted = apply_rigid_transform(ref[valid], transform)
    residual[valid] = cur[valid] - predicted
    return residual
