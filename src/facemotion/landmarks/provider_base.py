from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class FaceDetection:
    landmarks_norm: np.ndarray
    face_mask: np.ndarray


class LandmarkDetector(ABC):
    """Interface for frame-level face landmark and mask extraction."""

    @abstractmethod
    def detect(self, image_rgb: np.ndarray, timestamp_ms: int | None = None) -> FaceDetection | None:
        """Return normalized landmarks and a face mask, or ``None`` when no face is found."""
