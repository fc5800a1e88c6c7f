# SPDX-License-Identifier: Apache-2.0
from dataclasses import dataclass, field

import torch


@dataclass
class ProcessedImage:
    """One preprocessed image.

    `pixel_values` is `(C, H, W)` for towers that patchify internally, or
    `(num_patches, patch_dim)` for towers fed flattened patches, in which
    case `grid_thw` gives the patch grid.
    """

    pixel_values: torch.Tensor
    num_tokens: int
    grid_thw: tuple[int, int, int] | None = None


@dataclass
class ProcessedVideo:

    pixel_values: torch.Tensor
    num_tokens: int
    grid_thw: tuple[int, int, int] | None = None
    timestamps: list[float] = field(default_factory=list)
    # Seconds covered by one temporal patch.
    second_per_grid: float = 1.0


@dataclass
class LMInput:
    """Tokenized prompt plus the visual tensors its placeholders refer to."""

    input_ids: torch.Tensor
    images: list[ProcessedImage] = field(default_factory=list)
    videos: list[ProcessedVideo] = field(default_factory=list)
    prompt: str | None = None

    @property
    def num_tokens(self) -> int:
        return int(self.input_ids.shape[-1])

    @property
    def token_ids(self) -> list[int]:
        return self.input_ids.tolist()
