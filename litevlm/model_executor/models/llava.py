# SPDX-License-Identifier: Apache-2.0
import re
from collections.abc import Sequence
from typing import Any

import torch
import torch.nn as nn

from litevlm.config.model import ArchitectureConfig
from litevlm.exceptions import InvalidConfiguration, VisualTokenCountMismatch
from litevlm.model_executor.layers.activation import get_act_fn
from litevlm.model_executor.layers.linear import LiteLinear
from litevlm.model_executor.layers.vocab_embedding import LMHead
from litevlm.model_executor.models.llama import LlamaModel, sanitize_language_weights
from litevlm.model_executor.models.registry import ModelRegistry
from litevlm.model_executor.models.siglip import _CLIP_MODEL_TYPES, SiglipVisionModel
from litevlm.model_executor.models.utils import (
    WeightTable,
    drop_keys,
    flatten_patch_kernel,
    merge_multimodal_embeddings,
    rename_prefixes,
    sequential_positions,
)

# Historic (`language_model.model.*`) and current (`model.language_model.*`)
# transformers layouts both map onto the module graph below.
_PREFIX_RULES = [
    ("model.language_model.", "language_model."),
    ("model.vision_tower.", "vision_tower."),
    ("model.multi_modal_projector.", "multi_modal_projector."),
    ("language_model.model.", "language_model."),
    ("language_model.lm_head.", "lm_head."),
    ("vision_tower.vision_model.", "vision_tower."),
]

_VISION_LAYER_RE = re.compile(r"^vision_tower\.encoder\.layers\.(\d+)\.")

_UNUSED_VISION_KEYS = (
    "vision_tower.post_layernorm.",
    "vision_tower.head.",
    "embeddings.position_ids",
)


class LlavaMultiModalProjector(nn.Module):

    def __init__(self, config: ArchitectureConfig, prefix: str = ""):
        super().__init__()
        self.linear_1 = LiteLinear(
            config.vision_config.hidden_size,
            config.text_config.hidden_size,
            bias=config.multimodal_projector_bias,
            prefix=f"{prefix}.linear_1",
        )
        self.act = get_act_fn(config.projector_hidden_act)
        self.linear_2 = LiteLinear(
            config.text_config.hidden_size,
            config.text_config.hidden_size,
            bias=config.multimodal_projector_bias,
            prefix=f"{prefix}.linear_2",
        )

    def forward(self, x):
        return self.linear_2(self.act(self.linear_1(x)))


class LlavaForConditionalGeneration(nn.Module):
    """Vision tower + two-layer projector + Llama language model.

    Each image placeholder in the prompt is expanded by the processor to one
    token per projected patch feature; positions are sequential.
    """

    supports_multimodal = True
    weight_prefix_rules = _PREFIX_RULES

    def __init__(self, config: ArchitectureConfig, prefix: str = ""):
        super().__init__()
        if config.vision_config is None:
            raise InvalidConfiguration(f"{config.architecture} requires a vision_config")
        if config.image_token_id is None:
            raise InvalidConfiguration(f"{config.architecture} requires image_token_index")
        self.config = config

        self.vision_tower = SiglipVisionModel(
            config.vision_config, config.vision_feature_layer, prefix="vision_tower"
        )
        self.multi_modal_projector = LlavaMultiModalProjector(
            config, prefix="multi_modal_projector"
        )
        self.language_model = LlamaModel(config.text_config, prefix="language_model")
        self.lm_head = LMHead(config.text_config.vocab_size, config.text_config.hidden_size)
        if config.tie_word_embeddings:
            self.lm_head.tie_weights(self.language_model.embed_tokens)

    @property
    def num_layers(self) -> int:
        return self.config.text_config.num_hidden_layers

    @property
    def placeholder_token_ids(self) -> tuple[int, ...]:
        return (self.config.image_token_id,)

    @property
    def _drops_class_token(self) -> bool:
        return (
            self.config.vision_config.model_type in _CLIP_MODEL_TYPES
            and self.config.vision_feature_select_strategy == "default"
        )

    def embed_input_ids(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.language_model.embed_tokens(input_ids)

    def embed_multimodal(self, images: Sequence[Any]) -> torch.Tensor | None:
        if not images:
            return None
        weight = self.multi_modal_projector.linear_1.weight
        features = []
        for image in images:
            pixel_values = image.pixel_values.to(weight.device, weight.dtype)
            hidden = self.vision_tower(pixel_values)
            if self._drops_class_token:
                hidden = hidden[1:]
            features.append(hidden)
        return self.multi_modal_projector(torch.cat(features, dim=0))

    def get_input_embeddings(
        self,
        input_ids: torch.Tensor,
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> torch.Tensor:
        if videos:
            raise VisualTokenCountMismatch(0, sum(video.num_tokens for video in videos))
        return merge_multimodal_embeddings(
            input_ids,
            self.embed_input_ids(input_ids),
            self.embed_multimodal(images),
            self.placeholder_token_ids,
        )

    def get_input_positions(
        self,
        input_ids: Sequence[int],
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> tuple[torch.Tensor, int]:
        return sequential_positions(len(input_ids)), 0

    def forward(self, inputs_embeds, positions, kv_caches=None):
        return self.language_model(inputs_embeds, positions, kv_caches)

    def compute_logits(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return self.lm_head(hidden_states)

    def sanitize_weights(self, weights: WeightTable) -> WeightTable:
        weights = rename_prefixes(weights, self.weight_prefix_rules)
        # Layers past the feature layer and the pooling head are never run.
        weights = drop_keys(weights, _UNUSED_VISION_KEYS)
        kept_layers = self.vision_tower.num_hidden_layers
        weights = {
            name: tensor
            for name, tensor in weights.items()
            if not (m := _VISION_LAYER_RE.match(name)) or int(m.group(1)) < kept_layers
        }
        kernel = "vision_tower.embeddings.patch_embedding.weight"
        if kernel in weights:
            weights[kernel] = flatten_patch_kernel(
                kernel, weights[kernel], self.config.vision_config.num_channels
            )
        return sanitize_language_weights(weights, self.config.tie_word_embeddings)


ModelRegistry.register(
    "LlavaForConditionalGeneration", LlavaForConditionalGeneration, processor="LlavaProcessor"
)
