# SPDX-License-Identifier: Apache-2.0
"""A layer that samples the next token from the model's logits."""

from dataclasses import dataclass

import torch
import torch.nn as nn

from litevlm.sample.ops.topk_topp_sampler import TopKTopPSampler
from litevlm.sampling_params import SamplingParams


@dataclass
class SamplerOutput:

    token_id: int
    # Log-probability of `token_id` under the unprocessed logits.
    logprob: float | None = None


class Sampler(nn.Module):
    """
    Samples the next token of one sequence with the following steps:

    1. If logprobs are requested, compute them from the raw logits.
    2. Convert logits to float32.
    3. If the parameters ask for greedy sampling (temperature or top_p of
       zero or below), return the argmax.
    4. Apply temperature.
    5. Apply top_k and/or top_p.
    6. Sample from the resulting distribution with the session generator.
    """

    def __init__(self):
        super().__init__()
        self.topk_topp_sampler = TopKTopPSampler()

    def forward(
        self,
        logits: torch.Tensor,
        sampling_params: SamplingParams,
        generator: torch.Generator | None = None,
    ) -> SamplerOutput:
        """
        Args:
            logits: [vocab_size] logits of the last position.
        """
        logits = logits.reshape(-1).to(torch.float32)
        raw_logprobs = (
            logits.log_softmax(dim=-1) if sampling_params.logprobs else None
        )

        if sampling_params.greedy:
            token_id = int(logits.argmax(dim=-1))
        else:
            token_id = int(self.sample(logits, sampling_params, generator)[0])

        logprob = None
        if raw_logprobs is not None:
            logprob = float(raw_logprobs[token_id])
        return SamplerOutput(token_id=token_id, logprob=logprob)

    def sample(
        self,
        logits: torch.Tensor,
        sampling_params: SamplingParams,
        generator: torch.Generator | None,
    ) -> torch.Tensor:
        logits = logits / sampling_params.temperature
        k = sampling_params.top_k if sampling_params.top_k > 0 else None
        p = sampling_params.top_p if sampling_params.top_p < 1.0 else None
        return self.topk_topp_sampler(logits, generator, k, p)
