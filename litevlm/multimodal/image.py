# SPDX-License-Identifier: Apache-2.0
"""Image preprocessing primitives.

Sizes passed to and returned from these helpers follow PIL and are
`(width, height)` tuples; `smart_resize` follows the transformers image
processors and works in `(height, width)`.
"""

import math
from typing import Literal

import numpy as np
import torch
from PIL import Image

ResampleMethod = Literal["nearest", "bilinear", "bicubic", "lanczos"]

_PIL_RESAMPLE = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}


def rgba_to_rgb(image: Image.Image, background_color=(255, 255, 255)):
    assert image.mode == "RGBA"
    converted = Image.new("RGB", image.size, background_color)
    converted.paste(image, mask=image.split()[3])  # 3 is the alpha channel
    return converted


def convert_image_mode(image: Image.Image, to_mode: str):
    if image.mode == to_mode:
        return image
    elif image.mode == "RGBA" and to_mode == "RGB":
        return rgba_to_rgb(image)
    else:
        return image.convert(to_mode)


def fit_in(
    size: tuple[int, int],
    shortest_edge: int | None = None,
    longest_edge: int | None = None,
) -> tuple[int, int]:
    """Scale `size` preserving aspect ratio.

    With `shortest_edge` the short side becomes exactly that length; with
    `longest_edge` the long side is at most that length.
    """
    width, height = size
    if (shortest_edge is None) == (longest_edge is None):
        raise ValueError("exactly one of shortest_edge and longest_edge is required")
    if shortest_edge is not None:
        if width <= height:
            return shortest_edge, round(height * shortest_edge / width)
        return round(width * shortest_edge / height), shortest_edge
    scale = longest_edge / max(width, height)
    return max(1, math.floor(width * scale)), max(1, math.floor(height * scale))


def center_crop(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    width, height = image.size
    crop_w, crop_h = min(size[0], width), min(size[1], height)
    left = (width - crop_w) // 2
    top = (height - crop_h) // 2
    return image.crop((left, top, left + crop_w, top + crop_h))


def resample(
    image: Image.Image, size: tuple[int, int], method: ResampleMethod = "bicubic"
) -> Image.Image:
    if method not in _PIL_RESAMPLE:
        raise ValueError(f"Unsupported resample method {method!r}")
    if image.size == tuple(size):
        return image
    return image.resize(tuple(size), resample=_PIL_RESAMPLE[method])


def to_array(image: Image.Image, rescale_factor: float = 1 / 255) -> np.ndarray:
    """(H, W, C) float32 array scaled by `rescale_factor`."""
    return np.asarray(convert_image_mode(image, "RGB"), dtype=np.float32) * rescale_factor


def normalize(
    array: np.ndarray,
    mean: tuple[float, float, float],
    std: tuple[float, float, float],
) -> np.ndarray:
    """Per-channel normalization of a channels-last array."""
    mean_arr = np.asarray(mean, dtype=np.float32)
    std_arr = np.asarray(std, dtype=np.float32)
    return (array - mean_arr) / std_arr


def to_tensor(array: np.ndarray | Image.Image) -> torch.Tensor:
    """Channels-last image or array -> (C, H, W) float32 tensor."""
    if isinstance(array, Image.Image):
        array = to_array(array)
    return torch.from_numpy(np.ascontiguousarray(array.transpose(2, 0, 1))).float()


def smart_resize(
    height: int,
    width: int,
    factor: int = 28,
    min_pixels: int = 56 * 56,
    max_pixels: int = 14 * 14 * 4 * 1280,
) -> tuple[int, int]:
    """Rescale so both sides are multiples of `factor` and the pixel count
    lies within [`min_pixels`, `max_pixels`], keeping the aspect ratio
    as close as possible.
    """
    if max(height, width) / min(height, width) > 200:
        raise ValueError(
            "absolute aspect ratio must be smaller than 200, got "
            f"{max(height, width) / min(height, width)}"
        )
    h_bar = max(factor, round(height / factor) * factor)
    w_bar = max(factor, round(width / factor) * factor)
    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = max(factor, math.floor(height / beta / factor) * factor)
        w_bar = max(factor, math.floor(width / beta / factor) * factor)
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = math.ceil(height * beta / factor) * factor
        w_bar = math.ceil(width * beta / factor) * factor
    return h_bar, w_bar
