# SPDX-License-Identifier: Apache-2.0
"""Helpers shared by the architecture modules.

Covers weight-table sanitization rules (prefix renames, packed projection
fusion, conv kernel flattening) and multimodal embedding fusion.
"""

from collections.abc import Iterable, Sequence

import torch

from litevlm.exceptions import VisualTokenCountMismatch, WeightShapeMismatch

WeightTable = dict[str, torch.Tensor]

# checkpoint projection -> (packed module, shard id)
PACKED_MODULES_MAPPING: dict[str, tuple[str, int]] = {
    "q_proj": ("qkv_proj", 0),
    "k_proj": ("qkv_proj", 1),
    "v_proj": ("qkv_proj", 2),
    "gate_proj": ("gate_up_proj", 0),
    "up_proj": ("gate_up_proj", 1),
}

_STACKED_PARAMS = [
    ("qkv_proj", ("q_proj", "k_proj", "v_proj")),
    ("gate_up_proj", ("gate_proj", "up_proj")),
]


def maybe_prefix(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def rename_prefixes(
    weights: WeightTable, rules: Sequence[tuple[str, str]]
) -> WeightTable:
    """Apply `(old, new)` prefix rules in order to every key.

    Rules must map into names no earlier rule matches again, so that a
    renamed table passes through unchanged.
    """
    renamed: WeightTable = {}
    for name, tensor in weights.items():
        for old, new in rules:
            if name.startswith(old):
                name = new + name[len(old):]
        renamed[name] = tensor
    return renamed


def fuse_stacked_params(weights: WeightTable) -> WeightTable:
    """Concatenate separate q/k/v and gate/up tensors along the output axis.

    A group is fused only when all of its members are present; an
    incomplete group is left as is so injection reports what is missing.
    """
    fused = dict(weights)
    for packed, members in _STACKED_PARAMS:
        first = f".{members[0]}."
        for name in [n for n in weights if first in n]:
            head, _, tail = name.rpartition(first)
            sources = [f"{head}.{m}.{tail}" for m in members]
            if not all(s in fused for s in sources):
                continue
            tensors = [fused.pop(s) for s in sources]
            fused[f"{head}.{packed}.{tail}"] = torch.cat(tensors, dim=0)
    return fused


def flatten_patch_kernel(
    name: str, kernel: torch.Tensor, num_channels: int
) -> torch.Tensor:
    """Turn a patch-embedding conv kernel into a linear weight.

    Accepts kernels laid out `[out, C, *patch]` (torch) or `[out, *patch, C]`
    (channels-last exports) and returns `[out, C * prod(patch)]` with the
    channel axis outermost. Already flattened weights are returned unchanged.
    """
    if kernel.ndim == 2:
        return kernel
    if kernel.ndim not in (4, 5):
        raise WeightShapeMismatch(
            name, (kernel.shape[0], num_channels, "..."), tuple(kernel.shape)
        )
    if kernel.shape[1] != num_channels and kernel.shape[-1] == num_channels:
        dims = list(range(kernel.ndim))
        kernel = kernel.permute(0, dims[-1], *dims[1:-1])
    elif kernel.shape[1] != num_channels:
        raise WeightShapeMismatch(
            name, (kernel.shape[0], num_channels, *kernel.shape[2:]), tuple(kernel.shape)
        )
    return kernel.reshape(kernel.shape[0], -1).contiguous()


def drop_keys(weights: WeightTable, patterns: Iterable[str]) -> WeightTable:
    patterns = tuple(patterns)
    return {k: v for k, v in weights.items() if not any(p in k for p in patterns)}


def merge_multimodal_embeddings(
    input_ids: torch.Tensor,
    inputs_embeds: torch.Tensor,
    multimodal_embeddings: torch.Tensor | None,
    placeholder_token_ids: Sequence[int],
) -> torch.Tensor:
    """Substitute visual features at placeholder positions, in order.

    Args:
        input_ids: [num_tokens]
        inputs_embeds: [num_tokens, hidden_size]
        multimodal_embeddings: [num_features, hidden_size] or None
    """
    if placeholder_token_ids:
        is_placeholder = torch.isin(
            input_ids,
            torch.tensor(list(placeholder_token_ids), device=input_ids.device),
        )
    else:
        is_placeholder = torch.zeros_like(input_ids, dtype=torch.bool)
    num_placeholders = int(is_placeholder.sum())
    num_features = 0 if multimodal_embeddings is None else multimodal_embeddings.shape[0]
    if num_placeholders != num_features:
        raise VisualTokenCountMismatch(num_placeholders, num_features)
    if num_features == 0:
        return inputs_embeds

    inputs_embeds = inputs_embeds.clone()
    inputs_embeds[is_placeholder] = multimodal_embeddings.to(inputs_embeds.dtype)
    return inputs_embeds


def sequential_positions(num_tokens: int) -> torch.Tensor:
    return torch.arange(num_tokens, dtype=torch.long)
