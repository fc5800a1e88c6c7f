# SPDX-License-Identifier: Apache-2.0
"""Llama-family decoder used as the language stack of every architecture.

Covers Llama and Qwen2 checkpoints: the two differ only in projection
biases and rotary parameters, both read from `TextConfig`.
"""

from collections.abc import Sequence
from typing import Any

import torch
from torch import nn

from litevlm.config.model import ArchitectureConfig, TextConfig
from litevlm.engine.kv_cache import KVCache
from litevlm.exceptions import VisualTokenCountMismatch
from litevlm.model_executor.layers.activation import get_act_and_mul_fn
from litevlm.model_executor.layers.attention import Attention
from litevlm.model_executor.layers.layernorm import RMSNorm
from litevlm.model_executor.layers.linear import LiteLinear
from litevlm.model_executor.layers.rotary_embedding import get_rope
from litevlm.model_executor.layers.vocab_embedding import LMHead, VocabEmbedding
from litevlm.model_executor.models.registry import ModelRegistry
from litevlm.model_executor.models.utils import (
    WeightTable,
    drop_keys,
    fuse_stacked_params,
    maybe_prefix,
    sequential_positions,
)


class LlamaMLP(nn.Module):

    def __init__(self, config: TextConfig, prefix: str = ""):
        super().__init__()
        self.gate_up_proj = LiteLinear(
            config.hidden_size,
            [config.intermediate_size] * 2,
            bias=False,
            prefix=f"{prefix}.gate_up_proj",
        )
        self.down_proj = LiteLinear(
            config.intermediate_size,
            config.hidden_size,
            bias=False,
            prefix=f"{prefix}.down_proj",
        )
        self.act_fn = get_act_and_mul_fn(config.hidden_act)

    def forward(self, x):
        return self.down_proj(self.act_fn(self.gate_up_proj(x)))


class LlamaAttention(nn.Module):

    def __init__(self, config: TextConfig, prefix: str = ""):
        super().__init__()
        self.head_dim = config.head_dim
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.q_size = config.q_size
        self.kv_size = config.kv_size

        self.qkv_proj = LiteLinear(
            config.hidden_size,
            [self.q_size, self.kv_size, self.kv_size],
            bias=config.qkv_bias,
            prefix=f"{prefix}.qkv_proj",
        )
        self.o_proj = LiteLinear(
            self.q_size, config.hidden_size, bias=config.o_bias, prefix=f"{prefix}.o_proj"
        )
        self.attn = Attention(
            self.num_heads,
            self.head_dim,
            self.head_dim**-0.5,
            self.num_kv_heads,
            prefix=f"{prefix}.attn",
        )
        self.rotary_emb = get_rope(
            self.head_dim,
            max_position=config.max_position_embeddings,
            base=config.rope_theta,
            is_neox_style=True,
            rope_parameters=config.rope_scaling,
        )

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        kv_cache: KVCache | None = None,
    ) -> torch.Tensor:
        qkv = self.qkv_proj(hidden_states)
        q, k, v = qkv.split([self.q_size, self.kv_size, self.kv_size], dim=-1)
        q, k = self.rotary_emb(positions, q, k)
        return self.o_proj(self.attn(q, k, v, kv_cache=kv_cache))


class LlamaDecoderLayer(nn.Module):

    def __init__(self, config: TextConfig, prefix: str = ""):
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = LlamaAttention(config, prefix=f"{prefix}.self_attn")
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = LlamaMLP(config, prefix=f"{prefix}.mlp")

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        residual: torch.Tensor | None,
        kv_cache: KVCache | None = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        if residual is None:
            residual = hidden_states
            hidden_states = self.input_layernorm(hidden_states)
        else:
            hidden_states, residual = self.input_layernorm(hidden_states, residual)
        hidden_states = self.self_attn(positions, hidden_states, kv_cache)

        hidden_states, residual = self.post_attention_layernorm(hidden_states, residual)
        hidden_states = self.mlp(hidden_states)
        return hidden_states, residual


class LlamaModel(nn.Module):

    def __init__(self, config: TextConfig, prefix: str = ""):
        super().__init__()
        self.config = config
        self.embed_tokens = VocabEmbedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(
            [
                LlamaDecoderLayer(config, prefix=maybe_prefix(prefix, f"layers.{i}"))
                for i in range(config.num_hidden_layers)
            ]
        )
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def forward(
        self,
        inputs_embeds: torch.Tensor,
        positions: torch.Tensor,
        kv_caches: Sequence[KVCache] | None = None,
    ) -> torch.Tensor:
        hidden_states, residual = inputs_embeds, None
        for i, layer in enumerate(self.layers):
            kv_cache = kv_caches[i] if kv_caches is not None else None
            hidden_states, residual = layer(positions, hidden_states, residual, kv_cache)
        hidden_states, _ = self.norm(hidden_states, residual)
        return hidden_states


class LlamaForCausalLM(nn.Module):
    """Text-only checkpoints (`LlamaForCausalLM`, `Qwen2ForCausalLM`)."""

    supports_multimodal = False
    weight_prefix_rules: list[tuple[str, str]] = []

    def __init__(self, config: ArchitectureConfig, prefix: str = ""):
        super().__init__()
        self.config = config
        text_config = config.text_config
        self.model = LlamaModel(text_config, prefix=maybe_prefix(prefix, "model"))
        self.lm_head = LMHead(text_config.vocab_size, text_config.hidden_size)
        if config.tie_word_embeddings:
            self.lm_head.tie_weights(self.model.embed_tokens)

    @property
    def num_layers(self) -> int:
        return self.config.text_config.num_hidden_layers

    def embed_input_ids(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.model.embed_tokens(input_ids)

    def get_input_embeddings(
        self,
        input_ids: torch.Tensor,
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> torch.Tensor:
        if images or videos:
            raise VisualTokenCountMismatch(
                0, sum(item.num_tokens for item in [*images, *videos])
            )
        return self.embed_input_ids(input_ids)

    def get_input_positions(
        self,
        input_ids: Sequence[int],
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> tuple[torch.Tensor, int]:
        return sequential_positions(len(input_ids)), 0

    def forward(self, inputs_embeds, positions, kv_caches=None):
        return self.model(inputs_embeds, positions, kv_caches)

    def compute_logits(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return self.lm_head(hidden_states)

    def sanitize_weights(self, weights: WeightTable) -> WeightTable:
        return sanitize_language_weights(weights, self.config.tie_word_embeddings)


def sanitize_language_weights(
    weights: WeightTable, tie_word_embeddings: bool, lm_head: str = "lm_head."
) -> WeightTable:
    """Rules shared by every Llama-style language stack."""
    dropped = ["rotary_emb.inv_freq"]
    if tie_word_embeddings:
        dropped.append(lm_head)
    weights = drop_keys(weights, dropped)
    return fuse_stacked_params(weights)


ModelRegistry.register("LlamaForCausalLM", LlamaForCausalLM, processor="TextProcessor")
ModelRegistry.register("Qwen2ForCausalLM", LlamaForCausalLM, processor="TextProcessor")
