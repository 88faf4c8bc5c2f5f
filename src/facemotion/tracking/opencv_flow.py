from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from facemotion.errors import TrackingUnavailable
from facemotion.tracking.base import PointTracker

logger = logging.getLogger(__name__)


def to_gray_u8(image: np.ndarray) -> np.ndarray:
    arr = np.asarray(image)
    if arr.ndim == 3 and arr.shape[2] == 4:
        arr = cv2.cvtColor(arr, cv2.COLOR_RGBA2GRAY)
    elif arr.ndim == 3 and arr.shape[2] == 3:
        arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
    elif arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[:, :, 0]
    elif arr.ndim != 2:
        raise TrackingUnavailable(f"Unsupported image shape for tracking: {arr.shape}")

    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(arr)


def _check_pair(image_a: np.ndarray, image_b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    if image_a is None or image_b is None:
        raise TrackingUnavailable("Both images are required for tracking")
    gray_a = to_gray_u8(image_a)
    gray_b = to_gray_u8(image_b)
    if gray_a.size == 0 or gray_b.size == 0:
        raise TrackingUnavailable("Cannot track on an empty image")
    if gray_a.shape != gray_b.shape:
        raise TrackingUnavailable(f"Image sizes differ: {gray_a.shape} vs {gray_b.shape}")
    if min(gray_a.shape) < 2:
        raise TrackingUnavailable(f"Image is too small to track: {gray_a.shape}")
    return gray_a, gray_b


@dataclass
class FarnebackTracker(PointTracker):
    """Dense Farneback flow from ``image_a`` to ``image_b``, sampled at each point's pixel."""

    pyr_scale: float = 0.5
    levels: int = 3
    winsize: int = 15
    iterations: int = 3
    poly_n: int = 5
    poly_sigma: float = 1.2

    def dense_flow(self, image_a: np.ndarray, image_b: np.ndarray) -> np.ndarray:
        gray_a, gray_b = _check_pair(image_a, image_b)
        try:
            flow = cv2.calcOpticalFlowFarneback(
                gray_a,
                gray_b,
                None,
                pyr_scale=self.pyr_scale,
                levels=self.levels,
                winsize=self.winsize,
                iterations=self.iterations,
                poly_n=self.poly_n,
                poly_sigma=self.poly_sigma,
                flags=0,
            )
        except cv2.error as exc:
            raise TrackingUnavailable(f"Farneback optical flow failed: {exc}") from exc
        if flow is None or not np.isfinite(flow).all():
            raise TrackingUnavailable("Farneback optical flow returned an invalid field")
        return flow

    def track(self, image_a: np.ndarray, image_b: np.ndarray, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        flow = self.dense_flow(image_a, image_b)
        height, width = flow.shape[:2]

        out = np.full(points.shape, np.nan, dtype=np.float64)
        valid = np.isfinite(points).all(axis=1)
        if not valid.any():
            return out
        xs = np.clip(points[valid, 0].astype(np.int64), 0, width - 1)
        ys = np.clip(points[valid, 1].astype(np.int64), 0, height - 1)
        vectors = flow[ys, xs].astype(np.float64)
        out[valid] = points[valid] + vectors
        return out


@dataclass
class LucasKanadeTracker(PointTracker):
    """Pyramidal Lucas-Kanade; points whose status is 0 are returned as NaN."""

    win_size: int = 21
    max_level: int = 3
    max_iterations: int = 30
    epsilon: float = 0.01

    def track(self, image_a: np.ndarray, image_b: np.ndarray, points: np.ndarray) -> np.ndarray:
        gray_a, gray_b = _check_pair(image_a, image_b)
        points = np.asarray(points, dtype=np.float64)
        out = np.full(points.shape, np.nan, dtype=np.float64)
        valid = np.isfinite(points).all(axis=1)
        if not valid.any():
            return out

        p0 = points[valid].astype(np.float32).reshape(-1, 1, 2)
        criteria = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, self.max_iterations, self.epsilon)
        try:
            p1, status, _ = cv2.calcOpticalFlowPyrLK(
                gray_a,
                gray_b,
                p0,
                None,
                winSize=(self.win_size, self.win_size),
                maxLevel=self.max_level,
                criteria=criteria,
            )
        except cv2.error as exc:
            raise TrackingUnavailable(f"Lucas-Kanade optical flow failed: {exc}") from exc
        if p1 is None or status is None:
            raise TrackingUnavailable("Lucas-Kanade optical flow returned no result")

        status = status.reshape(-1).astype(bool)
        if not status.any():
            raise TrackingUnavailable("All points were lost by Lucas-Kanade tracking")
        lost = int(np.sum(~status))
        if lost:
            logger.debug("Lucas-Kanade lost %d of %d points", lost, status.size)

        tracked = p1.reshape(-1, 2).astype(np.float64)
        tracked[~status] = np.nan
        out[valid] = tracked
        return out


def make_tracker(kind: str) -> PointTracker:
    name = str(kind.value) if hasattr(kind, "value") else str(kind)
    if name == "farneback":
        return FarnebackTracker()
    if name == "lk":
        return LucasKanadeTracker()
    raise ValueError(f"Unsupported tracker '{name}'. Expected one of: farneback, lk")
