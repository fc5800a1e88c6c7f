# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence as GenericSequence
from dataclasses import dataclass, field
from typing import Literal

FinishReason = Literal["stop", "length", "abort"]


@dataclass
class TokenOutput:
    """One step of a generation stream.

    Args:
        index: Position of the token among the generated tokens.
        token_id: The sampled token.
        text: Text released by this step. Text that may still turn into a
            stop string or an incomplete character is held back and
            released by a later step.
        logprob: Log-probability of the token, if requested.
        finish_reason: Set on the last output of the stream.
        stop_reason: The stop string or stop token id that ended the
            stream, if any.
    """

    index: int
    token_id: int
    text: str
    logprob: float | None = None
    finish_reason: FinishReason | None = None
    stop_reason: int | str | None = None

    def finished(self) -> bool:
        return self.finish_reason is not None


@dataclass
class GenerationStats:

    prompt_tokens: int = 0
    generation_tokens: int = 0
    # Seconds spent in prefill (including visual encoding) and decode.
    prompt_time: float = 0.0
    generation_time: float = 0.0

    @property
    def prompt_tps(self) -> float:
        return self.prompt_tokens / self.prompt_time if self.prompt_time > 0 else 0.0

    @property
    def generation_tps(self) -> float:
        if self.generation_time <= 0:
            return 0.0
        return self.generation_tokens / self.generation_time


@dataclass
class GenerationOutput:

    prompt: str | None
    prompt_token_ids: GenericSequence[int]
    text: str
    token_ids: list[int]
    logprobs: list[float] | None
    finish_reason: FinishReason | None
    stop_reason: int | str | None = None
    stats: GenerationStats = field(default_factory=GenerationStats)

    def finished(self) -> bool:
        return self.finish_reason is not None

    def __repr__(self) -> str:
        return (
            f"GenerationOutput(text={self.text!r}, "
            f"token_ids={self.token_ids}, "
            f"finish_reason={self.finish_reason}, "
            f"stop_reason={self.stop_reason}, "
            f"prompt_tokens={self.stats.prompt_tokens}, "
            f"generation_tokens={self.stats.generation_tokens})"
        )
