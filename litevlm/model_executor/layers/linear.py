# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F


class LiteLinear(nn.Module):
    """Linear layer with optional packed outputs and LoRA adapters.

    `output_size` may be a list, in which case the layer is a packed
    projection (e.g. q/k/v or gate/up) and each entry is one shard. Adapters
    registered with `add_adapter` are applied on the fly until
    `merge_adapters` folds them into the base weight.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int | Sequence[int],
        bias: bool = True,
        params_dtype: torch.dtype | None = None,
        prefix: str = "",
    ):
        super().__init__()
        if isinstance(output_size, int):
            self.output_sizes = [output_size]
        else:
            self.output_sizes = list(output_size)
        self.input_size = input_size
        self.output_size = sum(self.output_sizes)
        self.params_dtype = params_dtype or torch.get_default_dtype()
        self.prefix = prefix

        # name -> (lora_a, lora_b, scaling, shard_id)
        self.lora_adapters: dict[str, tuple[torch.Tensor, torch.Tensor, float, int]] = {}

        self.weight = nn.Parameter(
            torch.empty(self.output_size, input_size, dtype=self.params_dtype),
            requires_grad=False,
        )
        if bias:
            self.bias = nn.Parameter(
                torch.empty(self.output_size, dtype=self.params_dtype),
                requires_grad=False,
            )
        else:
            self.register_parameter("bias", None)

    def shard_slice(self, shard_id: int) -> slice:
        if not 0 <= shard_id < len(self.output_sizes):
            raise IndexError(
                f"{self.prefix or 'linear'} has {len(self.output_sizes)} shards, "
                f"got shard {shard_id}"
            )
        start = sum(self.output_sizes[:shard_id])
        return slice(start, start + self.output_sizes[shard_id])

    def add_adapter(
        self,
        name: str,
        lora_a: torch.Tensor,
        lora_b: torch.Tensor,
        scaling: float = 1.0,
        shard_id: int = 0,
    ) -> None:
        shard = self.shard_slice(shard_id)
        rows = shard.stop - shard.start
        if lora_a.shape[1] != self.input_size or lora_b.shape[0] != rows:
            raise ValueError(
                f"LoRA adapter {name!r} with A={tuple(lora_a.shape)} "
                f"B={tuple(lora_b.shape)} does not fit {self.prefix} "
                f"shard {shard_id} ({rows}x{self.input_size})"
            )
        self.lora_adapters[name] = (
            lora_a.to(self.weight.device, self.weight.dtype),
            lora_b.to(self.weight.device, self.weight.dtype),
            scaling,
            shard_id,
        )

    def remove_adapter(self, name: str) -> None:
        self.lora_adapters.pop(name, None)

    @torch.no_grad()
    def merge_adapters(self) -> int:
        """Fold every registered adapter into the base weight.

        Returns the number of adapters merged. After merging the adapters
        are dropped, so the layer computes the same function without them.
        """
        merged = 0
        for lora_a, lora_b, scaling, shard_id in self.lora_adapters.values():
            delta = (lora_b.float() @ lora_a.float()) * scaling
            self.weight.data[self.shard_slice(shard_id)] += delta.to(self.weight.dtype)
            merged += 1
        self.lora_adapters.clear()
        return merged

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        res = F.linear(x, self.weight, self.bias)
        if not self.lora_adapters:
            return res

        for lora_a, lora_b, scaling, shard_id in self.lora_adapters.values():
            delta = F.linear(F.linear(x, lora_a), lora_b) * scaling
            res[..., self.shard_slice(shard_id)] += delta
        return res

    def extra_repr(self) -> str:
        return (
            f"in_features={self.input_size}, out_features={self.output_sizes}, "
            f"bias={self.bias is not None}"
        )
