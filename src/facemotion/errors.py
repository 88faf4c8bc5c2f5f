from __future__ import annotations


class FaceMotionError(Exception):
    """Base class for per-frame failures that make the pipeline skip a frame."""


class InvalidRegion(FaceMotionError, ValueError):
    """Sampling region or grid parameters cannot produce a valid grid."""


class InsufficientCorrespondences(FaceMotionError, ValueError):
    """Fewer than two valid point pairs are available for rigid alignment."""


class TrackingUnavailable(FaceMotionError, RuntimeError):
    """The point tracker could not resolve flow for an image pair."""


class NoFaceDetected(FaceMotionError, RuntimeError):
    """The landmark detector found no face in the current frame."""


class DegenerateAlignment(RuntimeWarning):
    """Point set has (near) zero variance; the fitted rotation is arbitrary."""
