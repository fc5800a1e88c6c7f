# SPDX-License-Identifier: Apache-2.0
"""SigLIP / CLIP vision tower used by Llava-style checkpoints."""

import torch
import torch.nn as nn

from litevlm.config.model import VisionConfig
from litevlm.model_executor.layers.activation import get_act_fn
from litevlm.model_executor.layers.attention import Attention
from litevlm.model_executor.layers.linear import LiteLinear
from litevlm.model_executor.layers.vocab_embedding import VocabEmbedding

_CLIP_MODEL_TYPES = ("clip_vision_model", "clip")


def patchify(pixel_values: torch.Tensor, patch_size: int) -> torch.Tensor:
    """(C, H, W) -> (num_patches, C * patch_size**2), patches in row-major order."""
    c, h, w = pixel_values.shape
    p = patch_size
    x = pixel_values.reshape(c, h // p, p, w // p, p)
    x = x.permute(1, 3, 0, 2, 4)
    return x.reshape((h // p) * (w // p), c * p * p)


class SiglipVisionEmbeddings(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.config = config
        self.patch_size = config.patch_size
        self.use_class_embedding = config.model_type in _CLIP_MODEL_TYPES
        self.patch_embedding = LiteLinear(
            config.num_channels * config.patch_size**2,
            config.hidden_size,
            bias=not self.use_class_embedding,
            prefix=f"{prefix}.patch_embedding",
        )
        num_positions = config.num_patches + int(self.use_class_embedding)
        if self.use_class_embedding:
            self.class_embedding = nn.Parameter(
                torch.empty(config.hidden_size), requires_grad=False
            )
        self.position_embedding = VocabEmbedding(num_positions, config.hidden_size)

    def forward(self, pixel_values: torch.Tensor) -> torch.Tensor:
        patches = patchify(pixel_values, self.patch_size)
        x = self.patch_embedding(patches.to(self.patch_embedding.weight.dtype))
        if self.use_class_embedding:
            x = torch.cat([self.class_embedding.unsqueeze(0), x], dim=0)
        return x + self.position_embedding.weight[: x.shape[0]]


class SiglipMLP(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.activation_fn = get_act_fn(config.hidden_act)
        self.fc1 = LiteLinear(config.hidden_size, config.intermediate_size, prefix=f"{prefix}.fc1")
        self.fc2 = LiteLinear(config.intermediate_size, config.hidden_size, prefix=f"{prefix}.fc2")

    def forward(self, x):
        return self.fc2(self.activation_fn(self.fc1(x)))


class SiglipAttention(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.embed_dim = config.hidden_size
        self.num_heads = config.num_attention_heads
        self.head_dim = self.embed_dim // self.num_heads
        self.scale = self.head_dim**-0.5

        self.qkv_proj = LiteLinear(
            self.embed_dim, [self.embed_dim] * 3, prefix=f"{prefix}.qkv_proj"
        )
        self.out_proj = LiteLinear(self.embed_dim, self.embed_dim, prefix=f"{prefix}.out_proj")
        self.attn = Attention(
            self.num_heads, self.head_dim, self.scale, causal=False, prefix=f"{prefix}.attn"
        )

    def forward(self, x):
        q, k, v = self.qkv_proj(x).chunk(3, dim=-1)
        return self.out_proj(self.attn(q, k, v))


class SiglipEncoderLayer(nn.Module):

    def __init__(self, config: VisionConfig, prefix: str = ""):
        super().__init__()
        self.layer_norm1 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.self_attn = SiglipAttention(config, prefix=f"{prefix}.self_attn")
        self.layer_norm2 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.mlp = SiglipMLP(config, prefix=f"{prefix}.mlp")

    def forward(self, x):
        x = x + self.self_attn(self.layer_norm1(x))
        x = x + self.mlp(self.layer_norm2(x))
        return x


class SiglipEncoder(nn.Module):

    def __init__(self, config: VisionConfig, num_hidden_layers: int, prefix: str = ""):
        super().__init__()
        self.layers = nn.ModuleList(
            [
                SiglipEncoderLayer(config, prefix=f"{prefix}.layers.{i}")
                for i in range(num_hidden_layers)
            ]
        )

    def forward(self, x):
        for layer in self.layers:
            x = layer(x)
        return x


class SiglipVisionModel(nn.Module):
    """Vision transformer that returns the hidden states of one layer.

    Only the layers up to `feature_layer` are built; `feature_layer` follows
    the hidden-states convention where index 0 is the embedding output and
    negative values count from the last layer. The selected states are
    taken before `post_layernorm`, so that norm is not built.
    """

    def __init__(self, config: VisionConfig, feature_layer: int = -1, prefix: str = ""):
        super().__init__()
        self.config = config
        total = config.num_hidden_layers
        if feature_layer < 0:
            feature_layer = total + 1 + feature_layer
        if not 0 <= feature_layer <= total:
            raise ValueError(
                f"vision_feature_layer {feature_layer} out of range for "
                f"{total} vision layers"
            )
        self.num_hidden_layers = feature_layer

        self.embeddings = SiglipVisionEmbeddings(config, prefix=f"{prefix}.embeddings")
        if self.embeddings.use_class_embedding:
            self.pre_layrnorm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.encoder = SiglipEncoder(config, self.num_hidden_layers, prefix=f"{prefix}.encoder")

    def forward(self, pixel_values: torch.Tensor) -> torch.Tensor:
        """
        Args:
            pixel_values: (C, H, W) normalized image
        Returns:
            [num_positions, hidden_size]
        """
        x = self.embeddings(pixel_values)
        if self.embeddings.use_class_embedding:
            x = self.pre_layrnorm(x)
        return self.encoder(x)
