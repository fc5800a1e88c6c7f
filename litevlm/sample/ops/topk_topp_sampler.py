# SPDX-License-Identifier: Apache-2.0

import torch
import torch.nn as nn

from litevlm.logger import init_logger

logger = init_logger(__name__)


class TopKTopPSampler(nn.Module):
    """Module that performs optional top-k and top-p filtering followed by
    weighted random sampling of logits.

    Implementations may update the logits tensor in-place.
    """

    def forward(
        self,
        logits: torch.Tensor,
        generator: torch.Generator | None,
        k: int | None,
        p: float | None,
    ) -> torch.Tensor:
        logits = apply_top_k_top_p(logits, k, p)
        probs = logits.softmax(dim=-1, dtype=torch.float32)
        return random_sample(probs, generator)


def apply_top_k_top_p(
    logits: torch.Tensor,
    k: int | None,
    p: float | None,
) -> torch.Tensor:
    """Apply top-k and top-p masks to the logits.

    Masked entries become -inf. At least one token always survives the
    top-p mask. This function sorts the logits tensor.
    """
    if k is None and p is None:
        return logits
    logits_sort, logits_idx = logits.sort(dim=-1, descending=False)

    if k is not None:
        # Apply top-k.
        k = min(k, logits_sort.size(-1))
        top_k_threshold = logits_sort[..., -k].unsqueeze(dim=-1)
        logits_sort.masked_fill_(logits_sort < top_k_threshold, -float("inf"))

    if p is not None:
        # Apply top-p.
        probs_sort = logits_sort.softmax(dim=-1)
        probs_sum = torch.cumsum(probs_sort, dim=-1)
        top_p_mask = probs_sum <= 1 - p
        # at least one
        top_p_mask[..., -1] = False
        logits_sort.masked_fill_(top_p_mask, -float("inf"))

    # Re-sort the probabilities.
    return logits.scatter(dim=-1, index=logits_idx, src=logits_sort)


def random_sample(
    probs: torch.Tensor,
    generator: torch.Generator | None,
) -> torch.Tensor:
    """Sample one token id per row from the probability distribution.

    A seeded generator makes the draw reproducible; it must live on the
    same device as `probs`.
    """
    if probs.dim() == 1:
        probs = probs.unsqueeze(0)
    return torch.multinomial(probs, num_samples=1, generator=generator).view(-1)
