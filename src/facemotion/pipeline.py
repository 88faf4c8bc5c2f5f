from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from facemotion.analysis.displacement import apply_mask, compute_field
from facemotion.analysis.grid import GridAxisMeta, save_grid_meta
from facemotion.analysis.reference import ReferenceFrame, ReferenceSelector
from facemotion.analysis.stabilizer import HeatmapStats, TemporalStabilizer, heatmap_stats
from facemotion.config import PipelineConfig, artifact_paths_for_video
from facemotion.errors import FaceMotionError, NoFaceDetected, TrackingUnavailable
from facemotion.io.export import LandmarkValuesWriter, save_heatmap_stack, write_json
from facemotion.io.frames import iter_frames, probe_video
from facemotion.landmarks.mediapipe_face_landmarker import normalized_to_pixel
from facemotion.landmarks.provider_base import LandmarkDetector
from facemotion.roi.indices import landmark_indices_for
from facemotion.tracking.base import PointTracker
from facemotion.tracking.opencv_flow import make_tracker, to_gray_u8
from facemotion.viz.heatmap import overlay_heatmap, render_heatmap, save_heatmap_png

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_ROOT = Path("artifacts")


def _empty_points() -> np.ndarray:
    return np.empty((0, 2), dtype=np.int64)


@dataclass(frozen=True)
class FrameResult:
    frame_index: int
    timestamp_ms: int
    skipped: bool = False
    skip_reason: str | None = None
    heatmap: np.ndarray | None = None
    stats: HeatmapStats | None = None
    values: np.ndarray = field(default_factory=lambda: np.empty((0,), dtype=np.float64))
    points: np.ndarray = field(default_factory=_empty_points)
    grid_meta: tuple[GridAxisMeta, GridAxisMeta] | None = None


class HeatmapPipeline:
    """Per-frame motion heatmap: detect face, pick reference, track, remove head motion, stabilize.

    Frames must arrive in order. A frame that raises :class:`FaceMotionError` is
    dropped wholesale: the stabilizer and reference keep their previous state.
    """

    def __init__(
        self,
        detector: LandmarkDetector,
        config: PipelineConfig | None = None,
        *,
        tracker: PointTracker | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.detector = detector
        self.tracker = tracker or make_tracker(self.config.tracker)
        self.stabilizer = TemporalStabilizer(
            alpha=self.config.stabilizer.alpha,
            floor=self.config.stabilizer.floor,
        )
        self.reference = ReferenceSelector(self.config.reference)
        self.landmark_indices = landmark_indices_for(self.config.roi_kind)

    def reset(self) -> None:
        self.stabilizer.reset()
        self.reference.reset()

    def notify_event(self, timestamp_ms: int) -> ReferenceFrame | None:
        return self.reference.notify_event(timestamp_ms)

    def process_frame(self, image_rgb: np.ndarray, frame_index: int, timestamp_ms: int) -> FrameResult:
        try:
            return self._process(image_rgb, frame_index, timestamp_ms)
        except FaceMotionError as exc:
            logger.warning("Skipping frame %d (%d ms): %s", frame_index, timestamp_ms, exc)
            return FrameResult(
                frame_index=frame_index,
                timestamp_ms=timestamp_ms,
                skipped=True,
                skip_reason=str(exc),
                heatmap=self.stabilizer.hold(),
            )

    def _process(self, image_rgb: np.ndarray, frame_index: int, timestamp_ms: int) -> FrameResult:
        detection = self.detector.detect(image_rgb, timestamp_ms)
        if detection is None:
            raise NoFaceDetected(f"No face detected in frame {frame_index}")

        gray = to_gray_u8(image_rgb)
        height, width = gray.shape[:2]
        landmarks = np.asarray(detection.landmarks_norm, dtype=np.float64)
        # Detectors pad landmarks they did not resolve with NaN rows.
        indices = [
            idx
            for idx in self.landmark_indices
            if idx < landmarks.shape[0] and np.isfinite(landmarks[idx, :2]).all()
        ]
        points = normalized_to_pixel(landmarks[indices], width, height)

        reference = self.reference.current()
        reference_gray = gray if reference is None else reference.image
        if reference_gray.shape != gray.shape:
            raise TrackingUnavailable(
                f"Reference frame size {reference_gray.shape} does not match frame {frame_index} size {gray.shape}"
            )
        mask = detection.face_mask
        params = self.config.displacement
        if params.mask_images:
            reference_input = apply_mask(reference_gray, mask)
            current_input = apply_mask(gray, mask)
        else:
            reference_input, current_input = reference_gray, gray

        result = compute_field(
            reference_input,
            current_input,
            mask,
            self.tracker,
            window_size=params.window_size,
            grid_spacing=params.grid_spacing,
            query_points=points,
            interpolation=params.interpolation.value,
        )
        heatmap = self.stabilizer.update(result.grid.disp_magnitude)
        self.reference.observe(ReferenceFrame(frame_index=frame_index, timestamp_ms=timestamp_ms, image=gray))

        return FrameResult(
            frame_index=frame_index,
            timestamp_ms=timestamp_ms,
            heatmap=heatmap,
            stats=heatmap_stats(heatmap),
            values=result.query_values,
            points=points,
            grid_meta=result.grid.axis_meta(),
        )


def _pending_events(events_ms: Iterable[int] | None) -> list[int]:
    return sorted(int(value) for value in (events_ms or []))


def run_video(
    video_path: str | Path,
    detector: LandmarkDetector,
    config: PipelineConfig | None = None,
    *,
    tracker: PointTracker | None = None,
    stride: int = 1,
    max_frames: int | None = None,
    save_heatmaps: bool = False,
    events_ms: Sequence[int] | None = None,
    artifact_root: str | Path = DEFAULT_ARTIFACT_ROOT,
) -> dict[str, Any]:
    """Run the heatmap pipeline over a video and write artifacts next to each other."""
    config = config or PipelineConfig()
    info = probe_video(video_path)
    paths = artifact_paths_for_video(video_path, artifact_root=artifact_root)
    paths["artifact_dir"].mkdir(parents=True, exist_ok=True)

    pipeline = HeatmapPipeline(detector, config, tracker=tracker)
    events = _pending_events(events_ms)

    frame_indices: list[int] = []
    timestamps_ms: list[int] = []
    heatmaps: list[np.ndarray] = []
    skipped: list[dict[str, Any]] = []
    grid_meta: tuple[GridAxisMeta, GridAxisMeta] | None = None
    processed = 0

    started_at = datetime.now(timezone.utc).isoformat()
    start_time = time.perf_counter()
    with LandmarkValuesWriter(paths["landmark_values_json"]) as writer:
        for frame in iter_frames(video_path, stride=stride, max_frames=max_frames):
            while events and events[0] <= frame.timestamp_ms:
                pipeline.notify_event(events.pop(0))

            result = pipeline.process_frame(frame.image_rgb, frame.index, frame.timestamp_ms)
            processed += 1
            if result.skipped:
                skipped.append({"frame_index": frame.index, "reason": result.skip_reason})
                continue

            writer.append(frame.index, frame.timestamp_ms, result.values, result.points)
            frame_indices.append(frame.index)
            timestamps_ms.append(frame.timestamp_ms)
            heatmaps.append(result.heatmap)
            if grid_meta is None:
                grid_meta = result.grid_meta

            if save_heatmaps:
                rgba = render_heatmap(result.heatmap, overlay_alpha=config.render.overlay_alpha)
                composite = overlay_heatmap(
                    frame.image_rgb,
                    rgba,
                    opacity=config.render.blend_opacity,
                    grid_meta=result.grid_meta,
                )
                save_heatmap_png(paths["heatmaps_dir"] / f"frame_{frame.index:06d}.png", composite)
    elapsed_seconds = time.perf_counter() - start_time

    save_heatmap_stack(
        paths["heatmaps_npz"],
        frame_indices=frame_indices,
        timestamps_ms=timestamps_ms,
        heatmaps=heatmaps,
    )
    if grid_meta is not None:
        save_grid_meta(paths["grid_meta_json"], *grid_meta)

    summary = {
        "video_path": str(info.path),
        "fps": info.fps,
        "width": info.width,
        "height": info.height,
        "frame_count": info.frame_count,
        "stride": stride,
        "max_frames": max_frames,
        "config": config.as_summary(),
        "processed_frames": processed,
        "heatmap_frames": len(heatmaps),
        "skipped_frames": len(skipped),
        "skipped": skipped,
        "events_ms": _pending_events(events_ms),
        "run_time": started_at,
        "elapsed_seconds": elapsed_seconds,
    }
    write_json(paths["summary_json"], summary)
    logger.info(
        "Processed %d frame(s) of %s: %d heatmap(s), %d skipped",
        processed,
        info.path.name,
        len(heatmaps),
        len(skipped),
    )

    return {
        "landmark_values_path": str(paths["landmark_values_json"]),
        "heatmaps_npz_path": str(paths["heatmaps_npz"]),
        "grid_meta_path": str(paths["grid_meta_json"]) if grid_meta is not None else None,
        "heatmaps_dir": str(paths["heatmaps_dir"]) if save_heatmaps else None,
        "summary_path": str(paths["summary_json"]),
        "summary": summary,
    }
