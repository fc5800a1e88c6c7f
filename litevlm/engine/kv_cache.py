# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence

import torch

from litevlm.exceptions import KVCacheInconsistencyError


class KVCache:
    """Per-layer key/value store for one generation session.

    Keys and values are kept as [num_kv_heads, capacity, head_size] buffers
    that grow in steps of `step` tokens; `offset` is the number of valid
    positions. The sequence axis only ever grows.
    """

    step = 256

    def __init__(self) -> None:
        self.keys: torch.Tensor | None = None
        self.values: torch.Tensor | None = None
        self.offset = 0

    def _grow(self, needed: int, like: torch.Tensor, like_v: torch.Tensor) -> None:
        num_kv_heads, _, k_dim = like.shape
        v_dim = like_v.shape[-1]
        capacity = ((needed + self.step - 1) // self.step) * self.step
        new_k = like.new_zeros((num_kv_heads, capacity, k_dim))
        new_v = like_v.new_zeros((num_kv_heads, capacity, v_dim))
        if self.keys is not None and self.offset:
            new_k[:, : self.offset] = self.keys[:, : self.offset]
            new_v[:, : self.offset] = self.values[:, : self.offset]
        self.keys, self.values = new_k, new_v

    def update_and_fetch(
        self, keys: torch.Tensor, values: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Append [num_kv_heads, n, head_size] keys/values and return all."""
        n = keys.shape[1]
        end = self.offset + n
        if self.keys is None or end > self.keys.shape[1]:
            self._grow(end, keys, values)
        self.keys[:, self.offset : end] = keys
        self.values[:, self.offset : end] = values
        self.offset = end
        return self.keys[:, :end], self.values[:, :end]

    @property
    def nbytes(self) -> int:
        if self.keys is None:
            return 0
        return self.keys.nbytes + self.values.nbytes

    def reset(self) -> None:
        self.keys = None
        self.values = None
        self.offset = 0

    def __len__(self) -> int:
        return self.offset

    def __repr__(self) -> str:
        return f"KVCache(offset={self.offset})"


def make_kv_caches(num_layers: int) -> list[KVCache]:
    return [KVCache() for _ in range(num_layers)]


def check_cache_consistency(caches: Sequence[KVCache], expected: int) -> None:
    lengths = {i: c.offset for i, c in enumerate(caches) if c.offset != expected}
    if lengths:
        raise KVCacheInconsistencyError(lengths, expected)
