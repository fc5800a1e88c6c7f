# SPDX-License-Identifier: Apache-2.0
import json
import os
from dataclasses import fields
from typing import Any

from pydantic import ConfigDict, ValidationError
from pydantic.dataclasses import dataclass

from litevlm.config.model import ArchitectureConfig
from litevlm.exceptions import InvalidConfiguration
from litevlm.logger import init_logger

logger = init_logger(__name__)

PREPROCESSOR_CONFIG_NAME = "preprocessor_config.json"
PROCESSOR_CONFIG_NAME = "processor_config.json"

# CLIP statistics, the transformers default for most image processors.
OPENAI_CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
OPENAI_CLIP_STD = (0.26862954, 0.26130258, 0.27577711)

# PIL resample ids as stored by transformers image processors.
_RESAMPLE_NAMES = {0: "nearest", 1: "lanczos", 2: "bilinear", 3: "bicubic"}


@dataclass(frozen=True, config=ConfigDict(extra="ignore"))
class ProcessorConfig:

    processor_class: str | None = None

    image_mean: tuple[float, float, float] = OPENAI_CLIP_MEAN

    image_std: tuple[float, float, float] = OPENAI_CLIP_STD

    rescale_factor: float = 1 / 255

    do_normalize: bool = True

    do_rescale: bool = True

    # Fixed target size; None defers to the resolution policy below.
    height: int | None = None

    width: int | None = None

    shortest_edge: int | None = None

    longest_edge: int | None = None

    min_pixels: int = 56 * 56

    max_pixels: int = 28 * 28 * 1280

    patch_size: int = 14

    merge_size: int = 1

    temporal_patch_size: int = 1

    resample: str = "bicubic"

    image_token: str | None = None

    video_token: str | None = None

    image_token_id: int | None = None

    video_token_id: int | None = None

    # Frames sampled from a video when the caller passes more.
    max_video_frames: int = 32

    @property
    def target_size(self) -> tuple[int, int] | None:
        if self.height is not None and self.width is not None:
            return self.height, self.width
        return None


def processor_config_from_dict(
    raw: dict[str, Any], arch_config: ArchitectureConfig | None = None
) -> ProcessorConfig:
    names = {f.name for f in fields(ProcessorConfig)}
    raw = dict(raw)

    size = raw.pop("size", None)
    if isinstance(size, dict):
        for key in ("height", "width", "shortest_edge", "longest_edge"):
            if key in size:
                raw.setdefault(key, size[key])
        # Qwen2-VL stores its pixel budget inside `size`.
        if "min_pixels" in size:
            raw.setdefault("min_pixels", size["min_pixels"])
        if "max_pixels" in size:
            raw.setdefault("max_pixels", size["max_pixels"])
    elif isinstance(size, int):
        raw.setdefault("height", size)
        raw.setdefault("width", size)

    crop = raw.pop("crop_size", None)
    if isinstance(crop, dict):
        raw.setdefault("height", crop.get("height"))
        raw.setdefault("width", crop.get("width"))
    elif isinstance(crop, int):
        raw.setdefault("height", crop)
        raw.setdefault("width", crop)

    resample = raw.get("resample")
    if isinstance(resample, int):
        raw["resample"] = _RESAMPLE_NAMES.get(resample, "bicubic")

    if arch_config is not None:
        vision = arch_config.vision_config
        if vision is not None:
            raw.setdefault("patch_size", vision.patch_size)
            raw.setdefault("merge_size", vision.spatial_merge_size)
            raw.setdefault("temporal_patch_size", vision.temporal_patch_size)
            if "height" not in raw and "min_pixels" not in raw and "shortest_edge" not in raw:
                raw.setdefault("height", vision.image_size)
                raw.setdefault("width", vision.image_size)
        if raw.get("image_token_id") is None:
            raw["image_token_id"] = arch_config.image_token_id
        if raw.get("video_token_id") is None:
            raw["video_token_id"] = arch_config.video_token_id

    for key in ("image_mean", "image_std"):
        if key in raw and raw[key] is not None:
            value = raw[key]
            raw[key] = tuple(value) if isinstance(value, list) else (value,) * 3

    try:
        return ProcessorConfig(**{k: v for k, v in raw.items() if k in names})
    except ValidationError as e:
        raise InvalidConfiguration(f"processor configuration: {e}") from e


def load_processor_config(
    model_dir: str, arch_config: ArchitectureConfig | None = None
) -> ProcessorConfig:
    """Read the optional processor files of a checkpoint.

    `processor_config.json` wins over `preprocessor_config.json` for keys
    present in both. A checkpoint with neither file gets defaults derived
    from its architecture config.
    """
    raw: dict[str, Any] = {}
    for name in (PREPROCESSOR_CONFIG_NAME, PROCESSOR_CONFIG_NAME):
        path = os.path.join(model_dir, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path) as f:
                content = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidConfiguration(f"cannot decode {name}: {e}") from e
        if not isinstance(content, dict):
            raise InvalidConfiguration(f"{name} must contain a JSON object")
        raw.update(content)

    if not raw:
        logger.info("No processor configuration in %s, using defaults", model_dir)
    return processor_config_from_dict(raw, arch_config)
