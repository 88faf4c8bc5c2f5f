from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import cv2
import numpy as np

from facemotion.landmarks.provider_base import FaceDetection, LandmarkDetector
from facemotion.roi.indices import FACE_OVAL, LANDMARK_COUNT

logger = logging.getLogger(__name__)

OFFICIAL_FACE_LANDMARKER_MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/face_landmarker/"
    "face_landmarker/float16/1/face_landmarker.task"
)
DEFAULT_MODEL_PATH = Path("models/face_landmarker.task")


def _build_missing_model_message(model_path: Path) -> str:
    return (
        f"Model file not found: {model_path}\n"
        f"Official model URL: {OFFICIAL_FACE_LANDMARKER_MODEL_URL}\n"
        "Download example:\n"
        f'mkdir -p "{model_path.parent}"\n'
        f'curl -L -o "{model_path}" "{OFFICIAL_FACE_LANDMARKER_MODEL_URL}"'
    )


def _require_model_file(model_path: str | Path) -> Path:
    resolved = Path(model_path)
    if not resolved.exists() or not resolved.is_file():
        raise FileNotFoundError(_build_missing_model_message(resolved))
    return resolved


def _import_mediapipe() -> Any:
    try:
        import mediapipe as mp  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "mediapipe is required for landmark extraction. Install with: pip install mediapipe"
        ) from exc
    return mp


def normalized_to_pixel(points: np.ndarray, width: int, height: int) -> np.ndarray:
    """Map normalized ``(x, y[, z])`` landmarks to integer pixels, clamped inside the image."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] < 2:
        raise ValueError(f"points must have shape (N, 2) or (N, 3), got {arr.shape}")
    if not np.isfinite(arr[:, :2]).all():
        raise ValueError("points must be finite; drop unresolved landmarks before converting")
    xs = np.clip(np.floor(arr[:, 0] * width), 0, width - 1)
    ys = np.clip(np.floor(arr[:, 1] * height), 0, height - 1)
    return np.column_stack((xs, ys)).astype(np.int64)


def face_mask_from_landmarks(
    landmarks_norm: np.ndarray,
    width: int,
    height: int,
    polygon: Sequence[int] = FACE_OVAL,
) -> np.ndarray:
    """White face-oval polygon on black, shape ``(height, width)`` uint8."""
    mask = np.zeros((int(height), int(width)), dtype=np.uint8)
    landmarks = np.asarray(landmarks_norm, dtype=np.float64)
    if landmarks.shape[0] <= max(polygon):
        raise ValueError(
            f"Need at least {max(polygon) + 1} landmarks for the face polygon, got {landmarks.shape[0]}"
        )
    pixels = normalized_to_pixel(landmarks[list(polygon)], width, height)
    cv2.fillPoly(mask, [pixels.astype(np.int32).reshape(-1, 1, 2)], 255)
    return mask


def _first_face_landmarks(result: Any) -> np.ndarray | None:
    if not getattr(result, "face_landmarks", None):
        return None
    first_face = result.face_landmarks[0]
    out = np.full((LANDMARK_COUNT, 3), np.nan, dtype=np.float64)
    for idx, landmark in enumerate(first_face):
        if idx >= LANDMARK_COUNT:
            break
        out[idx] = (landmark.x, landmark.y, landmark.z)
    return out


class MediaPipeFaceDetector(LandmarkDetector):
    """MediaPipe Tasks face landmarker; use as a context manager so the graph is released."""

    def __init__(
        self,
        model_path: str | Path = DEFAULT_MODEL_PATH,
        *,
        video_mode: bool = True,
        use_gpu_delegate: bool = False,
    ) -> None:
        self.model_path = _require_model_file(model_path)
        self.video_mode = video_mode
        self.use_gpu_delegate = use_gpu_delegate
        self._mp: Any = None
        self._landmarker: Any = None

    def open(self) -> "MediaPipeFaceDetector":
        if self._landmarker is not None:
            return self
        mp = _import_mediapipe()
        base_options_kwargs: dict[str, Any] = {"model_asset_path": str(self.model_path)}
        if self.use_gpu_delegate:
            base_options_kwargs["delegate"] = mp.tasks.BaseOptions.Delegate.GPU
        running_mode = (
            mp.tasks.vision.RunningMode.VIDEO if self.video_mode else mp.tasks.vision.RunningMode.IMAGE
        )
        options = mp.tasks.vision.FaceLandmarkerOptions(
            base_options=mp.tasks.BaseOptions(**base_options_kwargs),
            running_mode=running_mode,
            num_faces=1,
        )
        self._mp = mp
        self._landmarker = mp.tasks.vision.FaceLandmarker.create_from_options(options)
        logger.debug("Opened MediaPipe face landmarker from %s", self.model_path)
        return self

    def close(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None

    def __enter__(self) -> "MediaPipeFaceDetector":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def detect(self, image_rgb: np.ndarray, timestamp_ms: int | None = None) -> FaceDetection | None:
        if self._landmarker is None:
            raise RuntimeError("MediaPipeFaceDetector is not open; use it as a context manager")
        image = np.ascontiguousarray(image_rgb)
        mp_image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=image)
        if self.video_mode:
            if timestamp_ms is None:
                raise ValueError("timestamp_ms is required in video mode")
            result = self._landmarker.detect_for_video(mp_image, int(timestamp_ms))
        else:
            result = self._landmarker.detect(mp_image)

        landmarks = _first_face_landmarks(result)
        if landmarks is None:
            return None
        height, width = image.shape[:2]
        mask = face_mask_from_landmarks(landmarks, width, height)
        return FaceDetection(landmarks_norm=landmarks, face_mask=mask)
