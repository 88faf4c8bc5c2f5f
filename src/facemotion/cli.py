from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from facemotion.analysis.displacement import apply_mask, compute_field
from facemotion.analysis.grid import load_grid_meta, save_grid_meta
from facemotion.analysis.stabilizer import TemporalStabilizer, heatmap_stats
from facemotion.config import (
    FieldParams,
    Interpolation,
    PipelineConfig,
    ReferencePolicy,
    RoiKind,
    TrackerKind,
    load_pipeline_config,
)
from facemotion.errors import FaceMotionError, InvalidRegion, TrackingUnavailable
from facemotion.io.export import save_field_npz
from facemotion.io.frames import read_image, read_mask
from facemotion.landmarks.mediapipe_face_landmarker import DEFAULT_MODEL_PATH, MediaPipeFaceDetector
from facemotion.pipeline import run_video
from facemotion.tracking.opencv_flow import make_tracker
from facemotion.viz.heatmap import overlay_heatmap, render_heatmap, save_heatmap_png

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="FaceMotion CLI for facial micro-motion heatmaps.",
)
field_app = typer.Typer(help="Displacement field for a single image pair.")
video_app = typer.Typer(help="Frame-by-frame heatmap pipeline over a video.")
grid_app = typer.Typer(help="Grid metadata utilities.")
app.add_typer(field_app, name="field")
app.add_typer(video_app, name="video")
app.add_typer(grid_app, name="grid")
console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _validation_message(exc: ValidationError) -> str:
    return exc.errors()[0].get("msg", "Invalid input")


def _stats_table(title: str, stats: dict[str, float | int]) -> Table:
    table = Table(title=title)
    table.add_column("stat")
    table.add_column("value", justify="right")
    for key, value in stats.items():
        table.add_row(key, f"{value:.6f}" if isinstance(value, float) else str(value))
    return table


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Show debug logging.",
    ),
) -> None:
    _configure_logging(verbose)


@field_app.command("run")
def field_run(
    reference: Path = typer.Option(
        ...,
        "--reference",
        "-r",
        help="Reference image path.",
    ),
    current: Path = typer.Option(
        ...,
        "--current",
        "-c",
        help="Current image path.",
    ),
    mask: Optional[Path] = typer.Option(
        None,
        "--mask",
        "-m",
        help="Face mask image; black pixels are outside the face.",
    ),
    spacing: int = typer.Option(
        20,
        "--spacing",
        min=1,
        help="Grid spacing in pixels (both axes).",
    ),
    window: int = typer.Option(
        85,
        "--window",
        min=1,
        help="Correlation window size in pixels (both axes).",
    ),
    interpolation: Interpolation = typer.Option(
        Interpolation.raw,
        "--interpolation",
        help="How per-point displacements are mapped onto the grid.",
    ),
    tracker: TrackerKind = typer.Option(
        TrackerKind.farneback,
        "--tracker",
        help="Point tracker: farneback or lk.",
    ),
    floor: float = typer.Option(
        0.015,
        "--floor",
        min=0.0,
        help="Magnitudes below this are zeroed before rendering.",
    ),
    mask_images: bool = typer.Option(
        True,
        "--mask-images/--no-mask-images",
        help="Blank pixels outside the mask before tracking.",
    ),
    out: Path = typer.Option(
        ...,
        "--out",
        "-o",
        help="Output directory.",
    ),
) -> None:
    try:
        params = FieldParams(
            window_size=(window, window),
            grid_spacing=(spacing, spacing),
            interpolation=interpolation,
            mask_images=mask_images,
        )
    except ValidationError as exc:
        raise typer.BadParameter(_validation_message(exc), param_hint="--spacing") from exc

    images = {}
    for hint, path in (("--reference", reference), ("--current", current)):
        try:
            images[hint] = read_image(path)
        except (FileNotFoundError, RuntimeError, ValueError) as exc:
            raise typer.BadParameter(str(exc), param_hint=hint) from exc
    mask_image = None
    if mask is not None:
        try:
            mask_image = read_mask(mask)
        except (FileNotFoundError, RuntimeError, ValueError) as exc:
            raise typer.BadParameter(str(exc), param_hint="--mask") from exc

    reference_image = images["--reference"]
    current_image = images["--current"]
    if reference_image.shape != current_image.shape:
        raise typer.BadParameter(
            f"Image sizes differ: {reference_image.shape[:2]} vs {current_image.shape[:2]}",
            param_hint="--current",
        )
    if mask_image is not None and params.mask_images:
        try:
            reference_image = apply_mask(reference_image, mask_image)
            current_image = apply_mask(current_image, mask_image)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--mask") from exc

    try:
        result = compute_field(
            reference_image,
            current_image,
            mask_image,
            make_tracker(tracker),
            window_size=params.window_size,
            grid_spacing=params.grid_spacing,
            interpolation=params.interpolation.value,
        )
    except InvalidRegion as exc:
        raise typer.BadParameter(str(exc), param_hint="--spacing") from exc
    except TrackingUnavailable as exc:
        raise typer.BadParameter(str(exc), param_hint="--current") from exc
    except FaceMotionError as exc:
        console.print(f"[bold red]Failed[/bold red]: {exc}")
        raise typer.Exit(code=2) from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--interpolation") from exc

    heatmap = TemporalStabilizer(alpha=1.0, floor=floor).update(result.grid.disp_magnitude)
    rgba = render_heatmap(heatmap)
    heatmap_path = save_heatmap_png(out / "heatmap.png", rgba)
    overlay = overlay_heatmap(images["--current"], rgba, grid_meta=result.grid.axis_meta())
    overlay_path = save_heatmap_png(out / "overlay.png", overlay)
    field_path = save_field_npz(out / "field.npz", result.grid)
    meta_path = save_grid_meta(out / "grid_meta.json", *result.grid.axis_meta())

    console.print(_stats_table(f"Field: {current.name} vs {reference.name}", heatmap_stats(heatmap).as_dict()))
    for path in (heatmap_path, overlay_path, field_path, meta_path):
        console.print(f"Saved {path}")


@video_app.command("run")
def video_run(
    video: Path = typer.Option(
        ...,
        "--video",
        "-v",
        help="Input video path.",
    ),
    model: Path = typer.Option(
        DEFAULT_MODEL_PATH,
        "--model",
        help="MediaPipe Face Landmarker .task model path.",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="JSON pipeline config; command-line options override it.",
    ),
    policy: Optional[ReferencePolicy] = typer.Option(
        None,
        "--policy",
        help="Reference frame policy: previous, fixed, periodic, pre_event.",
    ),
    alpha: Optional[float] = typer.Option(
        None,
        "--alpha",
        help="Smoothing weight of the current frame, in (0, 1].",
    ),
    floor: Optional[float] = typer.Option(
        None,
        "--floor",
        help="Motion floor; smaller magnitudes are zeroed.",
    ),
    roi: Optional[RoiKind] = typer.Option(
        None,
        "--roi",
        help="Landmark set to export: all, eye, smile, tongue.",
    ),
    tracker: Optional[TrackerKind] = typer.Option(
        None,
        "--tracker",
        help="Point tracker: farneback or lk.",
    ),
    stride: int = typer.Option(
        1,
        "--stride",
        min=1,
        help="Process one frame every N frames.",
    ),
    max_frames: Optional[int] = typer.Option(
        None,
        "--max-frames",
        min=1,
        help="Stop after this many processed frames.",
    ),
    event_ms: Optional[List[int]] = typer.Option(
        None,
        "--event-ms",
        help="Event timestamp in ms (repeatable); pins a baseline under the pre_event policy.",
    ),
    save_heatmaps: bool = typer.Option(
        False,
        "--save-heatmaps/--no-save-heatmaps",
        help="Write a heatmap overlay PNG per frame.",
    ),
    artifact_root: Path = typer.Option(
        Path("artifacts"),
        "--artifact-root",
        help="Root directory for artifact outputs.",
    ),
) -> None:
    try:
        base = load_pipeline_config(config_path) if config_path is not None else PipelineConfig()
    except FileNotFoundError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    except (ValueError, ValidationError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc

    if not video.exists():
        raise typer.BadParameter(f"Video file does not exist: {video}", param_hint="--video")

    payload = base.model_dump(mode="json")
    if policy is not None:
        payload["reference"]["policy"] = policy.value
    if alpha is not None:
        payload["stabilizer"]["alpha"] = alpha
    if floor is not None:
        payload["stabilizer"]["floor"] = floor
    if roi is not None:
        payload["roi_kind"] = roi.value
    if tracker is not None:
        payload["tracker"] = tracker.value
    try:
        config = PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        hint = "--alpha" if "alpha" in str(exc) else "--floor"
        raise typer.BadParameter(_validation_message(exc), param_hint=hint) from exc

    try:
        with MediaPipeFaceDetector(model) as detector:
            result = run_video(
                video,
                detector,
                config,
                stride=stride,
                max_frames=max_frames,
                save_heatmaps=save_heatmaps,
                events_ms=event_ms,
                artifact_root=artifact_root,
            )
    except FileNotFoundError as exc:
        console.print(str(exc))
        raise typer.Exit(code=2) from exc
    except ImportError as exc:
        raise typer.BadParameter(str(exc), param_hint="mediapipe") from exc
    except (RuntimeError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--video") from exc

    summary = result["summary"]
    table = Table(title=f"Heatmap run: {video.stem}")
    table.add_column("item")
    table.add_column("value", justify="right")
    table.add_row("processed frames", str(summary["processed_frames"]))
    table.add_row("heatmap frames", str(summary["heatmap_frames"]))
    table.add_row("skipped frames", str(summary["skipped_frames"]))
    table.add_row("reference policy", config.reference.policy.value)
    table.add_row("roi", config.roi_kind.value)
    console.print(table)
    console.print(f"Saved landmark values to {result['landmark_values_path']}")
    console.print(f"Saved heatmaps to {result['heatmaps_npz_path']}")
    console.print(f"Saved summary to {result['summary_path']}")


@grid_app.command("show")
def grid_show(
    meta: Path = typer.Option(
        ...,
        "--meta",
        help="grid_meta.json written by field run or video run.",
    ),
) -> None:
    try:
        meta_x, meta_y = load_grid_meta(meta)
    except FileNotFoundError as exc:
        raise typer.BadParameter(str(exc), param_hint="--meta") from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--meta") from exc

    table = Table(title=f"Grid: {meta}")
    table.add_column("axis")
    table.add_column("min", justify="right")
    table.add_column("max", justify="right")
    table.add_column("count", justify="right")
    table.add_column("window", justify="right")
    for axis, item in (("x", meta_x), ("y", meta_y)):
        table.add_row(axis, f"{item.min:g}", f"{item.max:g}", str(item.count), f"{item.window_size:g}")
    console.print(table)
    console.print(f"Samples: {meta_x.count * meta_y.count}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
