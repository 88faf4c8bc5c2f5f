from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest

from facemotion.io.frames import iter_frames, probe_video, read_image, read_mask

FPS = 10.0
WIDTH = 64
HEIGHT = 48


def _write_dummy_video(path: Path, *, codec: str, frame_count: int) -> bool:
    fourcc = cv2.VideoWriter_fourcc(*codec)
    writer = cv2.VideoWriter(str(path), fourcc, FPS, (WIDTH, HEIGHT))
    if not writer.isOpened():
        return False

    try:
        for idx in range(frame_count):
            frame_bgr = np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)
            frame_bgr[:, :, 0] = (idx * 25) % 255
            frame_bgr[:, :, 2] = (idx * 75) % 255
            writer.write(frame_bgr)
    finally:
        writer.release()

    return path.exists() and path.stat().st_size > 0


def _make_dummy_video(tmp_path: Path, frame_count: int = 6) -> Path:
    for name, codec in (("dummy.mp4", "mp4v"), ("dummy.avi", "MJPG")):
        path = tmp_path / name
        if _write_dummy_video(path, codec=codec, frame_count=frame_count):
            return path
    pytest.skip("No available OpenCV writer codec for test video generation")


def test_probe_video_reads_metadata(tmp_path: Path) -> None:
    video_path = _make_dummy_video(tmp_path)

    info = probe_video(video_path)

    assert info.path == video_path
    assert info.fps > 0
    assert (info.width, info.height) == (WIDTH, HEIGHT)
    assert info.frame_count > 0
    assert info.duration_ms == round(info.frame_count * 1000 / info.fps)


def test_iter_frames_stride_and_timestamps(tmp_path: Path) -> None:
    video_path = _make_dummy_video(tmp_path)
    info = probe_video(video_path)

    frames = list(iter_frames(video_path, stride=2))
    assert frames

    indices = [frame.index for frame in frames]
    assert indices == list(range(0, indices[-1] + 1, 2))
    for frame in frames:
        assert frame.image_rgb.shape == (HEIGHT, WIDTH, 3)
        assert frame.image_rgb.dtype == np.uint8
        assert frame.timestamp_ms == round(frame.index * 1000 / info.fps)


def test_iter_frames_respects_max_frames(tmp_path: Path) -> None:
    video_path = _make_dummy_video(tmp_path)

    frames = list(iter_frames(video_path, max_frames=2))

    assert [frame.index for frame in frames] == [0, 1]


def test_iter_frames_rejects_bad_stride(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="stride"):
        list(iter_frames(tmp_path / "dummy.mp4", stride=0))


def test_probe_video_rejects_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="does not exist"):
        probe_video(tmp_path / "missing.mp4")


def test_probe_video_rejects_unknown_extension(tmp_path: Path) -> None:
    path = tmp_path / "clip.txt"
    path.write_text("not a video", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported video extension"):
        probe_video(path)


def test_read_image_returns_rgb(tmp_path: Path) -> None:
    image_bgr = np.zeros((4, 5, 3), dtype=np.uint8)
    image_bgr[..., 0] = 200
    path = tmp_path / "blue.png"
    cv2.imwrite(str(path), image_bgr)

    image = read_image(path)

    assert image.shape == (4, 5, 3)
    assert np.all(image[..., 2] == 200)
    assert np.all(image[..., 0] == 0)


def test_read_mask_keeps_stored_channels(tmp_path: Path) -> None:
    mask = np.zeros((4, 5), dtype=np.uint8)
    mask[1:3, 1:4] = 255
    path = tmp_path / "mask.png"
    cv2.imwrite(str(path), mask)

    loaded = read_mask(path)

    assert loaded.shape == (4, 5)
    assert np.array_equal(loaded, mask)
