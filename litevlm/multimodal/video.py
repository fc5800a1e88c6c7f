# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt
from PIL import Image

from litevlm.logger import init_logger

logger = init_logger(__name__)

DEFAULT_FPS = 2.0


@dataclass
class VideoInput:
    """Decoded video frames with their presentation times in seconds.

    When `timestamps` is omitted the frames are assumed to be evenly spaced
    at `fps`.
    """

    frames: list[Image.Image]
    timestamps: list[float] = field(default_factory=list)
    fps: float = DEFAULT_FPS

    def __post_init__(self):
        if not self.frames:
            raise ValueError("VideoInput needs at least one frame")
        if not self.timestamps:
            self.timestamps = [i / self.fps for i in range(len(self.frames))]
        if len(self.timestamps) != len(self.frames):
            raise ValueError(
                f"{len(self.frames)} frames but {len(self.timestamps)} timestamps"
            )

    @classmethod
    def from_array(
        cls, frames: npt.NDArray, fps: float = DEFAULT_FPS, timestamps: Sequence[float] = ()
    ) -> "VideoInput":
        """Build from a (T, H, W, C) uint8 array."""
        return cls([Image.fromarray(frame) for frame in frames], list(timestamps), fps)

    @property
    def num_frames(self) -> int:
        return len(self.frames)

    @property
    def frame_interval(self) -> float:
        """Mean seconds between consecutive frames."""
        if len(self.timestamps) < 2:
            return 1.0 / self.fps
        return (self.timestamps[-1] - self.timestamps[0]) / (len(self.timestamps) - 1)


def sample_frames(video: VideoInput, num_frames: int) -> VideoInput:
    """Pick `num_frames` evenly spaced frames, keeping their timestamps."""
    total_frames = video.num_frames
    if num_frames == -1 or num_frames >= total_frames:
        return video

    frame_indices = np.linspace(0, total_frames - 1, num_frames, dtype=int)
    logger.debug("Sampling %d of %d video frames", num_frames, total_frames)
    return VideoInput(
        frames=[video.frames[i] for i in frame_indices],
        timestamps=[video.timestamps[i] for i in frame_indices],
        fps=video.fps,
    )
