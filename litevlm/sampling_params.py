# SPDX-License-Identifier: Apache-2.0
"""Sampling parameters for text generation."""

import copy
from typing import Annotated

import msgspec

_SAMPLING_EPS = 1e-5


class SamplingParams(
    msgspec.Struct,
    omit_defaults=True,  # type: ignore[call-arg]
):  # type: ignore[call-arg]
    """Sampling parameters for one generation session.

    Args:
        max_tokens: Maximum number of tokens to generate.
        temperature: Randomness of the sampling. Zero or below
            means greedy sampling.
        top_p: Cumulative probability of the top tokens to consider. Zero or
            below also means greedy sampling.
        top_k: Number of top tokens to consider. 0 or -1 considers all.
        stop: Strings that stop the generation when they are generated.
            The returned text does not contain them.
        stop_token_ids: Tokens that stop the generation, in addition to the
            checkpoint's end-of-sequence ids.
        ignore_eos: Whether to keep generating after an end-of-sequence
            token.
        seed: Seed for the session's random generator.
        logprobs: Whether to return the log-probability of each sampled
            token.
        skip_special_tokens: Whether to drop special tokens from the text.
    """

    max_tokens: Annotated[int, msgspec.Meta(ge=1)] = 256
    temperature: float = 1.0
    top_p: float = 1.0
    top_k: int = 0
    stop: list[str] = msgspec.field(default_factory=list)
    stop_token_ids: list[int] = msgspec.field(default_factory=list)
    ignore_eos: bool = False
    seed: int | None = None
    logprobs: bool = False
    skip_special_tokens: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.stop, str):
            self.stop = [self.stop]
        self._verify_args()

    def _verify_args(self) -> None:
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be at least 1, got {self.max_tokens}.")
        if self.top_p > 1.0:
            raise ValueError(f"top_p must be at most 1, got {self.top_p}.")
        if self.top_k < -1:
            raise ValueError(
                f"top_k must be -1 (disable), 0 (disable), or at least 1, got {self.top_k}."
            )
        if any(not s for s in self.stop):
            raise ValueError("stop cannot contain an empty string.")

    @property
    def greedy(self) -> bool:
        return self.temperature < _SAMPLING_EPS or self.top_p < _SAMPLING_EPS

    def clone(self) -> "SamplingParams":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"SamplingParams(max_tokens={self.max_tokens}, "
            f"temperature={self.temperature}, "
            f"top_p={self.top_p}, "
            f"top_k={self.top_k}, "
            f"stop={self.stop}, "
            f"stop_token_ids={self.stop_token_ids}, "
            f"ignore_eos={self.ignore_eos}, "
            f"seed={self.seed}, "
            f"logprobs={self.logprobs}, "
            f"skip_special_tokens={self.skip_special_tokens})"
        )
