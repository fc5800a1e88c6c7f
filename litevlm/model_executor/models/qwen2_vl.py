# SPDX-License-Identifier: Apache-2.0
"""Qwen2-VL and Qwen2.5-VL.

The vision tower embeds flattened temporal patches, rotates queries/keys
with a 2-D (row, column) rotary embedding and merges each
`spatial_merge_size**2` block of patches into one language token. Qwen2.5-VL
adds gated MLPs, RMS norms and windowed attention in every block not listed
in `fullatt_block_indexes`.

Attention restrictions are expressed as boolean masks over segment ids
(one segment per frame, or per window within a frame), which keeps the
patch order produced by the processor intact.
"""

from collections.abc import Sequence
from typing import Any

import torch
import torch.nn as nn

from litevlm.config.model import ArchitectureConfig, VisionConfig
from litevlm.exceptions import InvalidConfiguration
from litevlm.model_executor.layers.activation import get_act_and_mul_fn, get_act_fn
from litevlm.model_executor.layers.attention import Attention, segment_mask
from litevlm.model_executor.layers.layernorm import RMSNorm
from litevlm.model_executor.layers.linear import LiteLinear
from litevlm.model_executor.layers.rotary_embedding import MRotaryEmbedding, apply_rotary_emb
from litevlm.model_executor.layers.vocab_embedding import LMHead
from litevlm.model_executor.models.llama import LlamaModel, sanitize_language_weights
from litevlm.model_executor.models.registry import ModelRegistry
from litevlm.model_executor.models.utils import (
    WeightTable,
    flatten_patch_kernel,
    merge_multimodal_embeddings,
    rename_prefixes,
    sequential_positions,
)

_PREFIX_RULES = [
    ("model.language_model.", "model."),
    ("model.visual.", "visual."),
]


def _make_norm(hidden_size: int, eps: float, use_rms_norm: bool) -> nn.Module:
    if use_rms_norm:
        return RMSNorm(hidden_size, eps=eps)
    return nn.LayerNorm(hidden_size, eps=eps)


class Qwen2VisionMLP(nn.Module):

    def __init__(self, config: VisionConfig, gated: bool, prefix: str = ""):
        super().__init__()
        self.gated = gated
        if gated:
            self.gate_up_proj = LiteLinear(
                config.hidden_size,
                [config.intermediate_size] * 2,
                prefix=f"{prefix}.gate_up_proj",
            )
            self.down_proj = LiteLinear(
                config.intermediate_size, config.hidden_size, prefix=f"{prefix}.down_proj"
            )
            self.act_fn = get_act_and_mul_fn(config.hidden_act)
        else:
            self.fc1 = LiteLinear(config.hidden_size, config.intermediate_size, prefix=f"{prefix}.fc1")
            self.fc2 = LiteLinear(config.intermediate_size, config.hidden_size, prefix=f"{prefix}.fc2")
            self.act = get_act_fn(config.hidden_act)

    def forward(self, x):
        if self.gated:
            return self.down_proj(self.act_fn(self.gate_up_proj(x)))
        return self.fc2(self.act(self.fc1(x)))


class Qwen2VisionAttention(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.embed_dim = config.hidden_size
        self.num_heads = config.num_attention_heads
        self.head_dim = config.head_dim
        self.qkv = LiteLinear(self.embed_dim, [self.embed_dim] * 3, prefix=f"{prefix}.qkv")
        self.proj = LiteLinear(self.embed_dim, self.embed_dim, prefix=f"{prefix}.proj")
        self.attn = Attention(
            self.num_heads, self.head_dim, self.head_dim**-0.5, causal=False, prefix=f"{prefix}.attn"
        )

    def forward(self, x, cos, sin, attn_mask):
        num_tokens = x.shape[0]
        q, k, v = self.qkv(x).chunk(3, dim=-1)
        q = apply_rotary_emb(q.view(num_tokens, self.num_heads, self.head_dim), cos, sin)
        k = apply_rotary_emb(k.view(num_tokens, self.num_heads, self.head_dim), cos, sin)
        out = self.attn(
            q.reshape(num_tokens, -1), k.reshape(num_tokens, -1), v, attn_mask=attn_mask
        )
        return self.proj(out)


class Qwen2VisionBlock(nn.Module):

    def __init__(self, config: VisionConfig, qwen2_5: bool, prefix: str = ""):
        super().__init__()
        self.norm1 = _make_norm(config.hidden_size, config.layer_norm_eps, qwen2_5)
        self.norm2 = _make_norm(config.hidden_size, config.layer_norm_eps, qwen2_5)
        self.attn = Qwen2VisionAttention(config, prefix=f"{prefix}.attn")
        self.mlp = Qwen2VisionMLP(config, gated=qwen2_5, prefix=f"{prefix}.mlp")

    def forward(self, x, cos, sin, attn_mask):
        x = x + self.attn(self.norm1(x), cos, sin, attn_mask)
        x = x + self.mlp(self.norm2(x))
        return x


class Qwen2VisionPatchEmbed(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.in_features = (
            config.num_channels * config.temporal_patch_size * config.patch_size**2
        )
        self.proj = LiteLinear(
            self.in_features, config.hidden_size, bias=False, prefix=f"{prefix}.proj"
        )

    def forward(self, x):
        return self.proj(x.view(-1, self.in_features))


class Qwen2VisionPatchMerger(nn.Module):

    def __init__(self, config: VisionConfig, out_hidden_size: int, qwen2_5: bool, prefix: str = ""):
        super().__init__()
        self.hidden_size = config.hidden_size * config.spatial_merge_size**2
        self.ln_q = _make_norm(config.hidden_size, 1e-6, qwen2_5)
        self.mlp = nn.Sequential(
            LiteLinear(self.hidden_size, self.hidden_size, prefix=f"{prefix}.mlp.0"),
            nn.GELU(),
            LiteLinear(self.hidden_size, out_hidden_size, prefix=f"{prefix}.mlp.2"),
        )

    def forward(self, x):
        return self.mlp(self.ln_q(x).view(-1, self.hidden_size))


class Qwen2VisionTransformer(nn.Module):

    def __init__(self, config: VisionConfig, out_hidden_size: int, qwen2_5: bool = False, prefix: str = ""):
        super().__init__()
        self.config = config
        self.spatial_merge_size = config.spatial_merge_size
        self.patch_embed = Qwen2VisionPatchEmbed(config, prefix=f"{prefix}.patch_embed")
        self.blocks = nn.ModuleList(
            [
                Qwen2VisionBlock(config, qwen2_5, prefix=f"{prefix}.blocks.{i}")
                for i in range(config.num_hidden_layers)
            ]
        )
        self.merger = Qwen2VisionPatchMerger(
            config, out_hidden_size, qwen2_5, prefix=f"{prefix}.merger"
        )

        rotary_dim = config.head_dim // 2
        self.inv_freq = 1.0 / (
            config.rope_theta
            ** (torch.arange(0, rotary_dim, 2, dtype=torch.float) / rotary_dim)
        )
        merged_window = config.window_size // config.spatial_merge_size // config.patch_size
        self.window_size = merged_window if qwen2_5 else 0
        self.fullatt_block_indexes = set(config.fullatt_block_indexes)

    def _merged_grid(self, h: int, w: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Row/column of every patch of one frame, in merge-unit order."""
        m = self.spatial_merge_size
        hpos = torch.arange(h).unsqueeze(1).expand(-1, w)
        wpos = torch.arange(w).unsqueeze(0).expand(h, -1)
        hpos = hpos.reshape(h // m, m, w // m, m).permute(0, 2, 1, 3).flatten()
        wpos = wpos.reshape(h // m, m, w // m, m).permute(0, 2, 1, 3).flatten()
        return hpos, wpos

    def rot_pos_emb(self, grid_thw: Sequence[int]) -> tuple[torch.Tensor, torch.Tensor]:
        t, h, w = grid_thw
        hpos, wpos = self._merged_grid(h, w)
        inv_freq = self.inv_freq.cpu()
        freqs_h = hpos.unsqueeze(-1).float() * inv_freq
        freqs_w = wpos.unsqueeze(-1).float() * inv_freq
        freqs = torch.cat([freqs_h, freqs_w], dim=-1).repeat(t, 1)
        return freqs.cos(), freqs.sin()

    def segment_ids(self, grid_thw: Sequence[int], windowed: bool) -> torch.Tensor:
        t, h, w = grid_thw
        frame = torch.arange(t).repeat_interleave(h * w)
        if not windowed:
            return frame
        hpos, wpos = self._merged_grid(h, w)
        m, ws = self.spatial_merge_size, self.window_size
        num_w = -(-(w // m) // ws)
        window = (hpos // m // ws) * num_w + (wpos // m // ws)
        num_windows = -(-(h // m) // ws) * num_w
        return frame * num_windows + window.repeat(t)

    def forward(self, pixel_values: torch.Tensor, grid_thw: Sequence[int]) -> torch.Tensor:
        """
        Args:
            pixel_values: [t * h * w, C * temporal_patch_size * patch_size**2]
            grid_thw: patch grid of one image or video
        Returns:
            [t * h * w // spatial_merge_size**2, out_hidden_size]
        """
        device = pixel_values.device
        x = self.patch_embed(pixel_values)
        cos, sin = (c.to(device) for c in self.rot_pos_emb(grid_thw))

        full_mask = segment_mask(self.segment_ids(grid_thw, windowed=False).to(device))
        window_mask = full_mask
        if self.window_size > 0:
            window_mask = segment_mask(self.segment_ids(grid_thw, windowed=True).to(device))

        for i, block in enumerate(self.blocks):
            mask = full_mask if i in self.fullatt_block_indexes else window_mask
            x = block(x, cos, sin, mask)
        return self.merger(x)


class Qwen2VLForConditionalGeneration(nn.Module):
    """Qwen2 language model fed by the Qwen2-VL vision tower.

    With `position_policy == "mrope"` visual tokens take 3-axis
    (temporal, row, column) positions and decoding continues from the
    largest position used plus one; otherwise positions are sequential.
    """

    supports_multimodal = True
    weight_prefix_rules = _PREFIX_RULES
    qwen2_5 = False

    def __init__(self, config: ArchitectureConfig, prefix: str = ""):
        super().__init__()
        if config.vision_config is None:
            raise InvalidConfiguration(f"{config.architecture} requires a vision_config")
        self.config = config
        text_config = config.text_config
        vision_config = config.vision_config

        self.visual = Qwen2VisionTransformer(
            vision_config,
            vision_config.out_hidden_size or text_config.hidden_size,
            qwen2_5=self.qwen2_5,
            prefix="visual",
        )
        self.model = LlamaModel(text_config, prefix="model")
        self.lm_head = LMHead(text_config.vocab_size, text_config.hidden_size)
        if config.tie_word_embeddings:
            self.lm_head.tie_weights(self.model.embed_tokens)

    @property
    def num_layers(self) -> int:
        return self.config.text_config.num_hidden_layers

    @property
    def placeholder_token_ids(self) -> tuple[int, ...]:
        return self.config.placeholder_token_ids

    def embed_input_ids(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.model.embed_tokens(input_ids)

    def embed_multimodal(self, items: Sequence[Any]) -> torch.Tensor | None:
        if not items:
            return None
        weight = self.visual.patch_embed.proj.weight
        return torch.cat(
            [
                self.visual(item.pixel_values.to(weight.device, weight.dtype), item.grid_thw)
                for item in items
            ],
            dim=0,
        )

    def get_input_embeddings(
        self,
        input_ids: torch.Tensor,
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> torch.Tensor:
        inputs_embeds = self.embed_input_ids(input_ids)
        for token_id, items in (
            (self.config.image_token_id, images),
            (self.config.video_token_id, videos),
        ):
            inputs_embeds = merge_multimodal_embeddings(
                input_ids,
                inputs_embeds,
                self.embed_multimodal(items),
                (token_id,) if token_id is not None else (),
            )
        return inputs_embeds

    def get_input_positions(
        self,
        input_ids: Sequence[int],
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> tuple[torch.Tensor, int]:
        if self.config.text_config.position_policy != "mrope":
            return sequential_positions(len(input_ids)), 0
        return MRotaryEmbedding.get_input_positions(
            input_ids,
            image_grid_thw=[image.grid_thw for image in images],
            video_grid_thw=[video.grid_thw for video in videos],
            spatial_merge_size=self.config.vision_config.spatial_merge_size,
            image_token_id=self.config.image_token_id,
            video_token_id=self.config.video_token_id,
            video_second_per_grid=[video.second_per_grid for video in videos],
            tokens_per_second=self.config.vision_config.tokens_per_second,
        )

    def forward(self, inputs_embeds, positions, kv_caches=None):
        return self.model(inputs_embeds, positions, kv_caches)

    def compute_logits(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return self.lm_head(hidden_states)

    def sanitize_weights(self, weights: WeightTable) -> WeightTable:
        weights = rename_prefixes(weights, self.weight_prefix_rules)
        kernel = "visual.patch_embed.proj.weight"
        if kernel in weights:
            weights[kernel] = flatten_patch_kernel(
                kernel, weights[kernel], self.config.vision_config.num_channels
            )
        return sanitize_language_weights(weights, self.config.tie_word_embeddings)


class Qwen2_5_VLForConditionalGeneration(Qwen2VLForConditionalGeneration):

    qwen2_5 = True


ModelRegistry.register(
    "Qwen2VLForConditionalGeneration", Qwen2VLForConditionalGeneration, processor="Qwen2VLProcessor"
)
ModelRegistry.register(
    "Qwen2_5_VLForConditionalGeneration",
    Qwen2_5_VLForConditionalGeneration,
    processor="Qwen2VLProcessor",
)
