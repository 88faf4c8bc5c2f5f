from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np


class PointTracker(ABC):
    """Interface for sparse point correspondence between two images."""

    @abstractmethod
    def track(self, image_a: np.ndarray, image_b: np.ndarray, points: np.ndarray) -> np.ndarray:
        """Return, for each ``(x, y)`` in ``image_a``, its location in ``image_b``.

        Points that cannot be resolved are returned as ``(NaN, NaN)``.
        """
