# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence
from typing import Any, ClassVar, Protocol, runtime_checkable

import torch
import torch.nn as nn

from litevlm.engine.kv_cache import KVCache

WeightTable = dict[str, torch.Tensor]


@runtime_checkable
class SupportsGeneration(Protocol):
    """What the model factory and the generation engine need from a model.

    Positions returned by `get_input_positions` are either `[num_tokens]`
    or `[3, num_tokens]`; the returned delta is added to the cache length
    to position every decoded token.
    """

    config: Any

    # Checkpoint prefix -> module prefix renames, also used for adapters.
    weight_prefix_rules: ClassVar[Sequence[tuple[str, str]]]

    @property
    def num_layers(self) -> int: ...

    def sanitize_weights(self, weights: WeightTable) -> WeightTable: ...

    def embed_input_ids(self, input_ids: torch.Tensor) -> torch.Tensor: ...

    def get_input_embeddings(
        self,
        input_ids: torch.Tensor,
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> torch.Tensor: ...

    def get_input_positions(
        self,
        input_ids: Sequence[int],
        images: Sequence[Any] = (),
        videos: Sequence[Any] = (),
    ) -> tuple[torch.Tensor, int]: ...

    def forward(
        self,
        inputs_embeds: torch.Tensor,
        positions: torch.Tensor,
        kv_caches: Sequence[KVCache] | None = None,
    ) -> torch.Tensor: ...

    def compute_logits(self, hidden_states: torch.Tensor) -> torch.Tensor: ...


@runtime_checkable
class SupportsMultiModal(Protocol):

    supports_multimodal: ClassVar[bool]

    @property
    def placeholder_token_ids(self) -> tuple[int, ...]: ...

    def embed_multimodal(self, items: Sequence[Any]) -> torch.Tensor | None:
        """Projected visual features of `items`, concatenated in order."""
        ...


def supports_generation(model: nn.Module) -> bool:
    return isinstance(model, SupportsGeneration)


def supports_multimodal(model: nn.Module) -> bool:
    return isinstance(model, SupportsMultiModal) and model.supports_multimodal
