"""
DialBridge - Pre-connection Frame Buffer

Holds caller audio that arrives before the voice session is ready.

Lifecycle:
    buffering ──flush()──▶ bypassed (permanent)

Frames come out of flush() in arrival order, exactly once. After the flush
the buffer refuses new frames so the caller switches to direct delivery.
The buffer is bounded; exceeding the cap raises FrameBufferOverflowError and
the bridge fails the call.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List

from app.core.exceptions import FrameBufferOverflowError
from app.core.types import AudioFrame

logger = logging.getLogger(__name__)


class FrameBuffer:
    """
    Bounded FIFO of pending AI-input frames for one call.

    Usage:
        buffer = FrameBuffer(max_frames=250)

        if buffer.is_buffering:
            buffer.push(frame)
        ...
        for frame in buffer.flush():
            await send(frame)
    """

    def __init__(self, max_frames: int = 250):
        if max_frames <= 0:
            raise ValueError("max_frames must be positive")
        self._max_frames = max_frames
        self._frames: Deque[AudioFrame] = deque()
        self._bypassed = False
        self._total_buffered = 0

    @property
    def is_buffering(self) -> bool:
        return not self._bypassed

    @property
    def is_bypassed(self) -> bool:
        return self._bypassed

    def __len__(self) -> int:
        return len(self._frames)

    def push(self, frame: AudioFrame) -> None:
        """
        Append a frame.

        Raises:
            RuntimeError: If the buffer has already been flushed
            FrameBufferOverflowError: If the cap is reached
        """
        if self._bypassed:
            raise RuntimeError("Frame buffer already flushed; deliver frames directly")

        if len(self._frames) >= self._max_frames:
            raise FrameBufferOverflowError(
                f"Frame buffer full ({self._max_frames} frames) while voice session was connecting",
                details={"max_frames": self._max_frames},
            )

        self._frames.append(frame)
        self._total_buffered += 1

    def flush(self) -> List[AudioFrame]:
        """Drain all frames in arrival order and switch to bypass. Idempotent."""
        frames = list(self._frames)
        self._frames.clear()
        if not self._bypassed:
            self._bypassed = True
            logger.debug("Frame buffer flushed: %d frames", len(frames))
        return frames

    def clear(self) -> None:
        """Drop buffered frames without delivering them (call teardown)."""
        self._frames.clear()

    @property
    def stats(self) -> dict:
        return {
            "buffered": len(self._frames),
            "total_buffered": self._total_buffered,
            "max_frames": self._max_frames,
            "bypassed": self._bypassed,
        }
