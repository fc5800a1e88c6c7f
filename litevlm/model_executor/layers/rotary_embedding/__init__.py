# SPDX-License-Identifier: Apache-2.0
from typing import Any

from .base import RotaryEmbedding, RotaryEmbeddingBase, apply_rotary_emb, rotate_half
from .llama3 import Llama3RotaryEmbedding
from .mrope import MRotaryEmbedding


def get_rope(
    head_size: int,
    max_position: int,
    base: float = 10000.0,
    is_neox_style: bool = True,
    rope_parameters: dict[str, Any] | None = None,
    rotary_dim: int | None = None,
) -> RotaryEmbeddingBase:
    rotary_dim = rotary_dim or head_size
    rope_parameters = rope_parameters or {}
    if "mrope_section" in rope_parameters:
        return MRotaryEmbedding(
            head_size,
            rotary_dim,
            max_position,
            base,
            is_neox_style,
            mrope_section=rope_parameters["mrope_section"],
        )
    rope_type = rope_parameters.get("rope_type") or rope_parameters.get("type")
    if rope_type == "llama3":
        return Llama3RotaryEmbedding(
            head_size,
            rotary_dim,
            max_position,
            base,
            is_neox_style,
            scaling_factor=rope_parameters["factor"],
            low_freq_factor=rope_parameters["low_freq_factor"],
            high_freq_factor=rope_parameters["high_freq_factor"],
            orig_max_position=rope_parameters["original_max_position_embeddings"],
        )
    if rope_type not in (None, "default", "mrope"):
        raise ValueError(f"Unsupported rope type {rope_type!r}")
    return RotaryEmbedding(head_size, rotary_dim, max_position, base, is_neox_style)


__all__ = [
    "Llama3RotaryEmbedding",
    "MRotaryEmbedding",
    "RotaryEmbedding",
    "RotaryEmbeddingBase",
    "apply_rotary_emb",
    "get_rope",
    "rotate_half",
]
