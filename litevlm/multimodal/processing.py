# SPDX-License-Identifier: Apache-2.0
"""Prompt processors: tokenize text and turn media into model inputs.

A processor owns the tokenizer and the `ProcessorConfig` of one checkpoint.
Visual placeholders in the prompt are expanded to as many placeholder
tokens as the vision tower will produce features for the matching image
or video, so that fusion can substitute them one for one.
"""

import re
from collections.abc import Sequence
from typing import Any

import numpy as np
import torch
from PIL import Image

from litevlm.config.model import ArchitectureConfig
from litevlm.config.processor import ProcessorConfig
from litevlm.exceptions import TokenizationFailure, VisualTokenCountMismatch
from litevlm.logger import init_logger
from litevlm.model_executor.models.siglip import _CLIP_MODEL_TYPES
from litevlm.multimodal.image import (
    center_crop,
    convert_image_mode,
    fit_in,
    normalize,
    resample,
    smart_resize,
    to_array,
    to_tensor,
)
from litevlm.multimodal.inputs import LMInput, ProcessedImage, ProcessedVideo
from litevlm.multimodal.video import VideoInput, sample_frames
from litevlm.utils.registry import ConstructorRegistry

logger = init_logger(__name__)

ImageLike = Image.Image | np.ndarray | str
Prompt = str | Sequence[dict[str, Any]]


def load_image(image: ImageLike) -> Image.Image:
    if isinstance(image, str):
        image = Image.open(image)
    elif isinstance(image, np.ndarray):
        image = Image.fromarray(image)
    return convert_image_mode(image, "RGB")


class BaseProcessor:
    """Shared prompt handling; subclasses implement the media transforms."""

    default_image_token: str | None = None
    default_video_token: str | None = None

    def __init__(
        self,
        config: ProcessorConfig,
        tokenizer: Any,
        arch_config: ArchitectureConfig,
    ):
        self.config = config
        self.tokenizer = tokenizer
        self.arch_config = arch_config
        self.image_token = config.image_token or self.default_image_token
        self.video_token = config.video_token or self.default_video_token
        self.image_token_id = self._token_id(self.image_token, config.image_token_id)
        self.video_token_id = self._token_id(self.video_token, config.video_token_id)

    def _token_id(self, token: str | None, token_id: int | None) -> int | None:
        if token is None or token_id is not None:
            return token_id
        try:
            return self.tokenizer.convert_tokens_to_ids(token)
        except Exception as e:
            raise TokenizationFailure(f"unknown placeholder token {token!r}: {e}") from e

    def process_images(self, images: Sequence[ImageLike]) -> list[ProcessedImage]:
        raise VisualTokenCountMismatch(0, len(images))

    def process_videos(self, videos: Sequence[VideoInput]) -> list[ProcessedVideo]:
        raise VisualTokenCountMismatch(0, len(videos))

    def render_prompt(self, prompt: Prompt) -> tuple[str, bool]:
        """Return the prompt text and whether it came from a chat template."""
        if isinstance(prompt, str):
            return prompt, False
        try:
            text = self.tokenizer.apply_chat_template(
                list(prompt), tokenize=False, add_generation_prompt=True
            )
        except Exception as e:
            raise TokenizationFailure(f"cannot apply chat template: {e}") from e
        return text, True

    def encode(self, text: str, add_special_tokens: bool) -> list[int]:
        try:
            return list(self.tokenizer.encode(text, add_special_tokens=add_special_tokens))
        except Exception as e:
            raise TokenizationFailure(f"cannot tokenize prompt: {e}") from e

    def tokenize(
        self,
        text: str,
        expansions: dict[str, list[int]],
        add_special_tokens: bool = True,
    ) -> list[int]:
        """Tokenize `text`, replacing the n-th occurrence of each placeholder
        string with `expansions[token][n]` copies of it.

        Placeholders are expanded in the text and the result is encoded in
        one pass, so the text after a placeholder is tokenized exactly as
        the checkpoint's own processor would. Occurrences beyond the number
        of expansions are kept as a single placeholder each.
        """
        return self.encode(self.expand_placeholders(text, expansions), add_special_tokens)

    def expand_placeholders(self, text: str, expansions: dict[str, list[int]]) -> str:
        markers = [t for t in expansions if t]
        if not markers:
            return text
        pattern = re.compile("|".join(re.escape(m) for m in markers))
        counters = dict.fromkeys(markers, 0)

        def expand(match: re.Match) -> str:
            marker = match.group(0)
            counts = expansions[marker]
            index = counters[marker]
            counters[marker] += 1
            return marker * (counts[index] if index < len(counts) else 1)

        return pattern.sub(expand, text)

    def process(
        self,
        prompt: Prompt,
        images: Sequence[ImageLike] | None = None,
        videos: Sequence[VideoInput] | None = None,
    ) -> LMInput:
        images = list(images or [])
        videos = list(videos or [])
        text, templated = self.render_prompt(prompt)
        processed_images = self.process_images(images) if images else []
        processed_videos = self.process_videos(videos) if videos else []

        expansions: dict[str, list[int]] = {}
        if self.image_token:
            expansions[self.image_token] = [i.num_tokens for i in processed_images]
        if self.video_token:
            expansions[self.video_token] = [v.num_tokens for v in processed_videos]
        input_ids = self.tokenize(text, expansions, add_special_tokens=not templated)
        return LMInput(
            input_ids=torch.tensor(input_ids, dtype=torch.long),
            images=processed_images,
            videos=processed_videos,
            prompt=text,
        )

    __call__ = process


class TextProcessor(BaseProcessor):
    """Text-only checkpoints."""


class LlavaProcessor(BaseProcessor):

    default_image_token = "<image>"

    def __init__(self, config, tokenizer, arch_config):
        super().__init__(config, tokenizer, arch_config)
        vision = arch_config.vision_config
        self.patch_size = vision.patch_size
        self.image_size = config.target_size or (vision.image_size, vision.image_size)
        self.has_class_token = (
            vision.model_type in _CLIP_MODEL_TYPES
            and arch_config.vision_feature_select_strategy == "full"
        )

    def preprocess(self, image: ImageLike) -> torch.Tensor:
        config = self.config
        image = load_image(image)
        height, width = self.image_size
        if config.shortest_edge is not None:
            image = resample(image, fit_in(image.size, shortest_edge=config.shortest_edge), config.resample)
            image = center_crop(image, (width, height))
        image = resample(image, (width, height), config.resample)
        array = to_array(image, config.rescale_factor if config.do_rescale else 1.0)
        if config.do_normalize:
            array = normalize(array, config.image_mean, config.image_std)
        return to_tensor(array)

    def process_images(self, images):
        processed = []
        for image in images:
            pixel_values = self.preprocess(image)
            _, h, w = pixel_values.shape
            num_tokens = (h // self.patch_size) * (w // self.patch_size) + int(self.has_class_token)
            processed.append(ProcessedImage(pixel_values, num_tokens))
        return processed


class Qwen2VLProcessor(BaseProcessor):

    default_image_token = "<|image_pad|>"
    default_video_token = "<|video_pad|>"

    @property
    def factor(self) -> int:
        return self.config.patch_size * self.config.merge_size

    def _normalized(self, image: Image.Image, size: tuple[int, int]) -> np.ndarray:
        config = self.config
        height, width = size
        image = resample(image, (width, height), config.resample)
        array = to_array(image, config.rescale_factor if config.do_rescale else 1.0)
        if config.do_normalize:
            array = normalize(array, config.image_mean, config.image_std)
        return array.transpose(2, 0, 1)

    def patchify(self, frames: np.ndarray) -> tuple[torch.Tensor, tuple[int, int, int]]:
        """(T, C, H, W) -> flattened patches and their (t, h, w) grid.

        Patches are ordered so that every `merge_size**2` consecutive rows
        belong to one merged language token.
        """
        config = self.config
        p, m, tps = config.patch_size, config.merge_size, config.temporal_patch_size
        if frames.shape[0] % tps:
            pad = np.repeat(frames[-1:], tps - frames.shape[0] % tps, axis=0)
            frames = np.concatenate([frames, pad], axis=0)
        t, c, h, w = frames.shape
        grid_t, grid_h, grid_w = t // tps, h // p, w // p
        patches = frames.reshape(grid_t, tps, c, grid_h // m, m, p, grid_w // m, m, p)
        patches = patches.transpose(0, 3, 6, 4, 7, 2, 1, 5, 8)
        flat = patches.reshape(grid_t * grid_h * grid_w, c * tps * p * p)
        return torch.from_numpy(np.ascontiguousarray(flat)).float(), (grid_t, grid_h, grid_w)

    def _num_tokens(self, grid_thw: tuple[int, int, int]) -> int:
        t, h, w = grid_thw
        return t * h * w // self.config.merge_size**2

    def process_images(self, images):
        config = self.config
        processed = []
        for image in images:
            image = load_image(image)
            size = smart_resize(
                image.height, image.width, self.factor, config.min_pixels, config.max_pixels
            )
            frames = self._normalized(image, size)[None]
            pixel_values, grid_thw = self.patchify(frames)
            processed.append(ProcessedImage(pixel_values, self._num_tokens(grid_thw), grid_thw))
        return processed

    def process_videos(self, videos):
        config = self.config
        processed = []
        for video in videos:
            video = sample_frames(video, config.max_video_frames)
            first = convert_image_mode(video.frames[0], "RGB")
            size = smart_resize(
                first.height, first.width, self.factor, config.min_pixels, config.max_pixels
            )
            frames = np.stack(
                [self._normalized(convert_image_mode(f, "RGB"), size) for f in video.frames]
            )
            pixel_values, grid_thw = self.patchify(frames)
            processed.append(
                ProcessedVideo(
                    pixel_values,
                    self._num_tokens(grid_thw),
                    grid_thw,
                    timestamps=list(video.timestamps),
                    second_per_grid=config.temporal_patch_size * video.frame_interval,
                )
            )
        return processed


ProcessorRegistry: ConstructorRegistry[BaseProcessor] = ConstructorRegistry("processor")
ProcessorRegistry.register("TextProcessor", TextProcessor)
ProcessorRegistry.register("LlavaProcessor", LlavaProcessor)
ProcessorRegistry.register("Qwen2VLProcessor", Qwen2VLProcessor)
ProcessorRegistry.register("Qwen2_5_VLProcessor", Qwen2VLProcessor)


def get_processor(
    processor_config: ProcessorConfig,
    tokenizer: Any,
    arch_config: ArchitectureConfig,
    default_processor: str | None = None,
) -> BaseProcessor:
    """Build the processor named by the checkpoint, falling back to the
    default registered for its architecture."""
    processor_id = processor_config.processor_class
    if processor_id not in ProcessorRegistry:
        if processor_id is not None:
            logger.info(
                "Processor %s is not registered, using %s", processor_id, default_processor
            )
        processor_id = default_processor or "TextProcessor"
    return ProcessorRegistry.resolve(processor_id, processor_config, tokenizer, arch_config)
