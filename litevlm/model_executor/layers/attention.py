# SPDX-License-Identifier: Apache-2.0
import torch
import torch.nn as nn
import torch.nn.functional as F

from litevlm.engine.kv_cache import KVCache


def causal_mask(num_queries: int, offset: int, device: torch.device) -> torch.Tensor:
    """Boolean [num_queries, offset + num_queries] mask, True where allowed."""
    q_pos = torch.arange(offset, offset + num_queries, device=device).unsqueeze(1)
    k_pos = torch.arange(offset + num_queries, device=device).unsqueeze(0)
    return k_pos <= q_pos


def segment_mask(segment_ids: torch.Tensor) -> torch.Tensor:
    """Bidirectional mask letting tokens attend within their own segment."""
    return segment_ids.unsqueeze(0) == segment_ids.unsqueeze(1)


class Attention(nn.Module):
    """Scaled dot-product attention over already projected q/k/v.

    With `causal=True` every query attends to the cached keys plus the keys
    up to its own position. Fewer key/value heads than query heads are
    broadcast by repetition (grouped-query attention). Bidirectional use
    passes an explicit boolean `attn_mask`.
    """

    def __init__(
        self,
        num_heads: int,
        head_size: int,
        scale: float,
        num_kv_heads: int | None = None,
        causal: bool = True,
        prefix: str = "",
    ):
        super().__init__()
        self.num_heads = num_heads
        self.head_size = head_size
        self.scale = scale
        self.num_kv_heads = num_kv_heads or num_heads
        if self.num_heads % self.num_kv_heads != 0:
            raise ValueError(
                f"num_heads ({num_heads}) must be a multiple of "
                f"num_kv_heads ({self.num_kv_heads})"
            )
        self.num_queries_per_kv = self.num_heads // self.num_kv_heads
        self.causal = causal
        self.prefix = prefix

    def forward(
        self,
        query: torch.Tensor,
        key: torch.Tensor,
        value: torch.Tensor,
        kv_cache: KVCache | None = None,
        attn_mask: torch.Tensor | None = None,
    ) -> torch.Tensor:
        """
        Args:
            query: [num_tokens, num_heads * head_size]
            key: [num_tokens, num_kv_heads * head_size]
            value: [num_tokens, num_kv_heads * head_size]
        Returns:
            [num_tokens, num_heads * head_size]
        """
        num_tokens = query.shape[0]
        q = query.view(num_tokens, self.num_heads, self.head_size).transpose(0, 1)
        k = key.view(num_tokens, self.num_kv_heads, self.head_size).transpose(0, 1)
        v = value.view(num_tokens, self.num_kv_heads, self.head_size).transpose(0, 1)

        offset = 0
        if kv_cache is not None:
            offset = kv_cache.offset
            k, v = kv_cache.update_and_fetch(k, v)

        if self.num_queries_per_kv > 1:
            k = k.repeat_interleave(self.num_queries_per_kv, dim=0)
            v = v.repeat_interleave(self.num_queries_per_kv, dim=0)

        if attn_mask is None and self.causal:
            attn_mask = causal_mask(num_tokens, offset, query.device)

        out = F.scaled_dot_product_attention(
            q, k, v, attn_mask=attn_mask, scale=self.scale
        )
        return out.transpose(0, 1).reshape(num_tokens, self.num_heads * self.head_size)

    def extra_repr(self) -> str:
        return (
            f"num_heads={self.num_heads}, num_kv_heads={self.num_kv_heads}, "
            f"head_size={self.head_size}, causal={self.causal}"
        )
