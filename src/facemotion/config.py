from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RoiKind(str, Enum):
    all = "all"
    eye = "eye"
    smile = "smile"
    tongue = "tongue"


class ReferencePolicy(str, Enum):
    previous = "previous"
    fixed = "fixed"
    periodic = "periodic"
    pre_event = "pre_event"


class Interpolation(str, Enum):
    raw = "raw"
    nearest = "nearest"
    linear = "linear"
    cubic = "cubic"


class TrackerKind(str, Enum):
    farneback = "farneback"
    lk = "lk"


class FieldParams(BaseModel):
    window_size: tuple[int, int] = Field(default=(85, 85), description="Correlation window size (px)")
    grid_spacing: tuple[int, int] = Field(default=(20, 20), description="Grid spacing along x and y (px)")
    interpolation: Interpolation = Interpolation.raw
    mask_images: bool = Field(default=True, description="Blank pixels outside the face mask before tracking")

    @field_validator("window_size", "grid_spacing")
    @classmethod
    def validate_positive_pair(cls, value: tuple[int, int]) -> tuple[int, int]:
        if value[0] <= 0 or value[1] <= 0:
            raise ValueError(f"Values must be positive, got: {value}")
        return value


class StabilizerParams(BaseModel):
    alpha: float = Field(default=0.3, description="Exponential smoothing weight of the current frame")
    floor: float = Field(default=0.015, description="Magnitudes below this are treated as noise")

    @field_validator("alpha")
    @classmethod
    def validate_alpha(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got: {value}")
        return value

    @field_validator("floor")
    @classmethod
    def validate_floor(cls, value: float) -> float:
        if value < 0:
            raise ValueError(f"floor must be >= 0, got: {value}")
        return value


class RenderParams(BaseModel):
    overlay_alpha: float = Field(default=0.4, ge=0.0, le=1.0)
    blend_opacity: float = Field(default=0.3, ge=0.0, le=1.0)


class ReferenceParams(BaseModel):
    policy: ReferencePolicy = ReferencePolicy.previous
    refresh_every: int = Field(default=30, ge=1, description="Frames between refreshes for the periodic policy")
    buffer_ms: int = Field(default=7000, ge=0, description="History kept for the pre_event policy")
    lead_ms: int = Field(default=5000, ge=0, description="Baseline offset before the event for pre_event")


class PipelineConfig(BaseModel):
    displacement: FieldParams = Field(default_factory=FieldParams)
    stabilizer: StabilizerParams = Field(default_factory=StabilizerParams)
    render: RenderParams = Field(default_factory=RenderParams)
    reference: ReferenceParams = Field(default_factory=ReferenceParams)
    roi_kind: RoiKind = RoiKind.all
    tracker: TrackerKind = TrackerKind.farneback

    def as_summary(self) -> dict[str, Any]:
        return {
            "window_size": list(self.displacement.window_size),
            "grid_spacing": list(self.displacement.grid_spacing),
            "interpolation": self.displacement.interpolation.value,
            "alpha": self.stabilizer.alpha,
            "floor": self.stabilizer.floor,
            "reference_policy": self.reference.policy.value,
            "roi_kind": self.roi_kind.value,
            "tracker": self.tracker.value,
        }


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = json.loads(config_path.read_text(encoding="utf-8"))
    return PipelineConfig.model_validate(payload)


def artifact_dir_for_video(
    video_path: str | Path,
    artifact_root: str | Path = Path("artifacts"),
) -> Path:
    return Path(artifact_root) / Path(video_path).stem


def artifact_paths_for_video(
    video_path: str | Path,
    artifact_root: str | Path = Path("artifacts"),
) -> dict[str, Path]:
    artifact_dir = artifact_dir_for_video(video_path=video_path, artifact_root=artifact_root)
    return {
        "artifact_dir": artifact_dir,
        "landmark_values_json": artifact_dir / "landmark_values.json",
        "heatmaps_npz": artifact_dir / "heatmaps.npz",
        "grid_meta_json": artifact_dir / "grid_meta.json",
        "heatmaps_dir": artifact_dir / "heatmaps",
        "summary_json": artifact_dir / "summary.json",
    }


def normalize_roi_kind(value: Any) -> RoiKind:
    if isinstance(value, RoiKind):
        return value
    text = str(value.value) if hasattr(value, "value") else str(value)
    valid_values = {member.value for member in RoiKind}
    if text not in valid_values:
        valid = ", ".join(member.value for member in RoiKind)
        raise ValueError(f"Unsupported roi '{text}'. Expected one of: {valid}")
    return RoiKind(text)
