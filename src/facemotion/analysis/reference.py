from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

import numpy as np

from facemotion.config import ReferenceParams, ReferencePolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceFrame:
    frame_index: int
    timestamp_ms: int
    image: np.ndarray


class ReferenceSelector:
    """Chooses the frame each new frame is compared against.

    ``previous`` compares consecutive frames, ``fixed`` keeps the first frame,
    ``periodic`` refreshes every ``refresh_every`` frames and ``pre_event`` keeps a
    rolling buffer and pins the frame closest to ``lead_ms`` before
    :meth:`notify_event`. Until an event arrives, ``pre_event`` behaves like
    ``previous``.
    """

    def __init__(self, params: ReferenceParams | None = None) -> None:
        self.params = params or ReferenceParams()
        self._reference: ReferenceFrame | None = None
        self._buffer: deque[ReferenceFrame] = deque()
        self._pinned: ReferenceFrame | None = None
        self._frames_since_refresh = 0

    @property
    def policy(self) -> ReferencePolicy:
        return self.params.policy

    @property
    def pinned(self) -> ReferenceFrame | None:
        return self._pinned

    def current(self) -> ReferenceFrame | None:
        if self._pinned is not None:
            return self._pinned
        return self._reference

    def reset(self) -> None:
        self._reference = None
        self._buffer.clear()
        self._pinned = None
        self._frames_since_refresh = 0

    def _trim_buffer(self, now_ms: int) -> None:
        horizon = now_ms - self.params.buffer_ms
        while self._buffer and self._buffer[0].timestamp_ms < horizon:
            self._buffer.popleft()

    def observe(self, frame: ReferenceFrame) -> None:
        """Record a processed frame so it can serve as a later reference."""
        policy = self.params.policy
        if policy == ReferencePolicy.fixed:
            if self._reference is None:
                self._reference = frame
            return
        if policy == ReferencePolicy.periodic:
            self._frames_since_refresh += 1
            if self._reference is None or self._frames_since_refresh >= self.params.refresh_every:
                self._reference = frame
                self._frames_since_refresh = 0
            return
        if policy == ReferencePolicy.pre_event:
            self._buffer.append(frame)
            self._trim_buffer(frame.timestamp_ms)
        self._reference = frame

    def notify_event(self, timestamp_ms: int) -> ReferenceFrame | None:
        """Pin the buffered frame closest to ``timestamp_ms - lead_ms`` without going past it."""
        if self.params.policy != ReferencePolicy.pre_event:
            logger.debug("Ignoring event at %d ms: policy is %s", timestamp_ms, self.params.policy.value)
            return None
        if not self._buffer:
            logger.warning("Event at %d ms arrived with an empty frame buffer", timestamp_ms)
            return None

        target = int(timestamp_ms) - self.params.lead_ms
        candidates = [frame for frame in self._buffer if frame.timestamp_ms <= target]
        if candidates:
            chosen = min(candidates, key=lambda frame: target - frame.timestamp_ms)
        else:
            chosen = self._buffer[0]
        self._pinned = chosen
        logger.info(
            "Pinned frame %d (%d ms) as baseline for event at %d ms",
            chosen.frame_index,
            chosen.timestamp_ms,
            timestamp_ms,
        )
        return chosen

    def clear_event(self) -> None:
        self._pinned = None
