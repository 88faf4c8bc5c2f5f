from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

SUPPORTED_VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".m4v"}
SUPPORTED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff"}


@dataclass(frozen=True)
class VideoInfo:
    path: Path
    fps: float
    frame_count: int
    width: int
    height: int

    @property
    def duration_ms(self) -> int:
        return round(self.frame_count * 1000 / self.fps)


@dataclass(frozen=True)
class Frame:
    index: int
    timestamp_ms: int
    image_rgb: np.ndarray


def _existing_file(path: str | Path, allowed: set[str], kind: str) -> Path:
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"{kind} file does not exist: {file_path}")
    if not file_path.is_file():
        raise ValueError(f"{kind} path is not a file: {file_path}")
    if file_path.suffix.lower() not in allowed:
        supported = ", ".join(sorted(allowed))
        raise ValueError(f"Unsupported {kind.lower()} extension '{file_path.suffix}'. Supported: {supported}")
    return file_path


@contextmanager
def _capture(video_path: Path) -> Iterator[cv2.VideoCapture]:
    cap = cv2.VideoCapture(str(video_path))
    try:
        if not cap.isOpened():
            raise RuntimeError(f"Failed to open video file with OpenCV: {video_path}")
        yield cap
    finally:
        cap.release()


def probe_video(path: str | Path) -> VideoInfo:
    video_path = _existing_file(path, SUPPORTED_VIDEO_EXTENSIONS, "Video")
    with _capture(video_path) as cap:
        fps = float(cap.get(cv2.CAP_PROP_FPS))
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    if fps <= 0:
        raise RuntimeError(f"Invalid FPS from video metadata: {video_path}")
    if width <= 0 or height <= 0:
        raise RuntimeError(f"Invalid frame size from video metadata: {video_path}")
    return VideoInfo(path=video_path, fps=fps, frame_count=max(frame_count, 0), width=width, height=height)


def iter_frames(
    path: str | Path,
    *,
    stride: int = 1,
    start_frame: int = 0,
    max_frames: int | None = None,
) -> Iterator[Frame]:
    """Yield RGB frames in decode order, keeping every ``stride``-th frame."""
    if stride < 1:
        raise ValueError(f"stride must be >= 1, got: {stride}")
    if start_frame < 0:
        raise ValueError(f"start_frame must be >= 0, got: {start_frame}")
    if max_frames is not None and max_frames < 1:
        raise ValueError(f"max_frames must be >= 1, got: {max_frames}")

    info = probe_video(path)
    with _capture(info.path) as cap:
        if start_frame > 0:
            cap.set(cv2.CAP_PROP_POS_FRAMES, start_frame)

        frame_idx = start_frame
        emitted = 0
        while max_frames is None or emitted < max_frames:
            ok, image_bgr = cap.read()
            if not ok:
                break
            if (frame_idx - start_frame) % stride == 0:
                yield Frame(
                    index=frame_idx,
                    timestamp_ms=round(frame_idx * 1000 / info.fps),
                    image_rgb=cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB),
                )
                emitted += 1
            frame_idx += 1


def read_image(path: str | Path) -> np.ndarray:
    """Load an image file as RGB ``uint8``."""
    image_path = _existing_file(path, SUPPORTED_IMAGE_EXTENSIONS, "Image")
    image_bgr = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
    if image_bgr is None:
        raise RuntimeError(f"Failed to decode image with OpenCV: {image_path}")
    return cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)


def read_mask(path: str | Path) -> np.ndarray:
    """Load a face mask as stored; pixels whose color channels are all zero are outside the face."""
    mask_path = _existing_file(path, SUPPORTED_IMAGE_EXTENSIONS, "Mask")
    mask = cv2.imread(str(mask_path), cv2.IMREAD_UNCHANGED)
    if mask is None:
        raise RuntimeError(f"Failed to decode mask with OpenCV: {mask_path}")
    return mask
