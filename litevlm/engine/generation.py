# SPDX-License-Identifier: Apache-2.0
"""Single-session autoregressive generation.

A session runs Prefill -> Decode* -> Stopped. Prefill feeds the fused
prompt through the model in chunks of at most `prefill_chunk_size` tokens,
filling one `KVCache` per layer. Each decode step feeds the last sampled
token alone. Sessions own their caches; the model is only read.
"""

import time
from collections.abc import Callable, Generator, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

import torch
import torch.nn as nn

from litevlm.engine.kv_cache import KVCache, check_cache_consistency, make_kv_caches
from litevlm.exceptions import ContextLengthExceeded, InferenceFailure, TokenizationFailure
from litevlm.logger import init_logger
from litevlm.multimodal.inputs import LMInput
from litevlm.outputs import FinishReason, GenerationOutput, GenerationStats, TokenOutput
from litevlm.sample.sampler import Sampler
from litevlm.sampling_params import SamplingParams
from litevlm.transformers_utils.tokenizer import decode_tokens

logger = init_logger(__name__)

StopCriteria = Callable[[list[int], str], bool]
TokenCallback = Callable[[TokenOutput], bool | None]

# Marker for an incomplete UTF-8 sequence in decoded text.
_REPLACEMENT_CHAR = "\ufffd"


@dataclass
class GenerationState:

    prompt: str | None
    prompt_token_ids: list[int]
    kv_caches: list[KVCache]
    generator: torch.Generator | None = None
    # Added to the cache length to get the position of the next token.
    rope_delta: int = 0
    token_ids: list[int] = field(default_factory=list)
    logprobs: list[float] | None = None
    text: str = ""
    num_released: int = 0
    finish_reason: FinishReason | None = None
    stop_reason: int | str | None = None
    stats: GenerationStats = field(default_factory=GenerationStats)

    @property
    def num_processed(self) -> int:
        return self.kv_caches[0].offset if self.kv_caches else 0

    @property
    def step(self) -> int:
        return len(self.token_ids)

    @property
    def finished(self) -> bool:
        return self.finish_reason is not None

    def release(self) -> None:
        for cache in self.kv_caches:
            cache.reset()
        self.kv_caches = []

    def to_output(self) -> GenerationOutput:
        return GenerationOutput(
            prompt=self.prompt,
            prompt_token_ids=self.prompt_token_ids,
            text=self.text,
            token_ids=list(self.token_ids),
            logprobs=self.logprobs,
            finish_reason=self.finish_reason,
            stop_reason=self.stop_reason,
            stats=self.stats,
        )


class GenerationEngine:
    """Drives generation sessions against a loaded model.

    The model must implement the generation interface of
    `litevlm.model_executor.models.interfaces.SupportsGeneration`.
    """

    def __init__(
        self,
        model: nn.Module,
        tokenizer: Any,
        max_model_len: int,
        eos_token_ids: Iterable[int] = (),
        prefill_chunk_size: int = 512,
        device: torch.device | None = None,
    ):
        if prefill_chunk_size < 1:
            raise ValueError(f"prefill_chunk_size must be positive, got {prefill_chunk_size}")
        self.model = model
        self.tokenizer = tokenizer
        self.max_model_len = max_model_len
        self.eos_token_ids = set(eos_token_ids)
        self.prefill_chunk_size = prefill_chunk_size
        if device is None:
            device = next(model.parameters()).device
        self.device = device
        self.sampler = Sampler()

    def _new_state(self, lm_input: LMInput, sampling_params: SamplingParams) -> GenerationState:
        generator = None
        if sampling_params.seed is not None:
            generator = torch.Generator(device=self.device)
            generator.manual_seed(sampling_params.seed)
        return GenerationState(
            prompt=lm_input.prompt,
            prompt_token_ids=lm_input.token_ids,
            kv_caches=make_kv_caches(self.model.num_layers),
            generator=generator,
            logprobs=[] if sampling_params.logprobs else None,
            stats=GenerationStats(prompt_tokens=lm_input.num_tokens),
        )

    def _run(self, state: GenerationState, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except RuntimeError as e:
            raise InferenceFailure(f"{type(e).__name__}: {e}", step=state.step) from e

    @torch.inference_mode()
    def _prefill(self, state: GenerationState, lm_input: LMInput) -> torch.Tensor:
        start = time.perf_counter()
        model = self.model
        input_ids = lm_input.input_ids.to(self.device)
        positions, state.rope_delta = model.get_input_positions(
            state.prompt_token_ids, lm_input.images, lm_input.videos
        )
        positions = positions.to(self.device)
        # Visual features are computed once for the whole prompt.
        inputs_embeds = self._run(
            state, model.get_input_embeddings, input_ids, lm_input.images, lm_input.videos
        )

        num_tokens = input_ids.shape[-1]
        for chunk_start in range(0, num_tokens, self.prefill_chunk_size):
            chunk_end = min(chunk_start + self.prefill_chunk_size, num_tokens)
            hidden_states = self._run(
                state,
                model,
                inputs_embeds[chunk_start:chunk_end],
                positions[..., chunk_start:chunk_end],
                state.kv_caches,
            )
            check_cache_consistency(state.kv_caches, chunk_end)
        logits = self._run(state, model.compute_logits, hidden_states[-1:])
        state.stats.prompt_time = time.perf_counter() - start
        return logits

    @torch.inference_mode()
    def _decode(self, state: GenerationState, token_id: int) -> torch.Tensor:
        model = self.model
        expected = state.num_processed + 1
        input_ids = torch.tensor([token_id], dtype=torch.long, device=self.device)
        positions = torch.tensor(
            [state.num_processed + state.rope_delta], dtype=torch.long, device=self.device
        )
        inputs_embeds = self._run(state, model.embed_input_ids, input_ids)
        hidden_states = self._run(state, model, inputs_embeds, positions, state.kv_caches)
        check_cache_consistency(state.kv_caches, expected)
        return self._run(state, model.compute_logits, hidden_states[-1:])

    def _check_stop(
        self,
        state: GenerationState,
        sampling_params: SamplingParams,
        stop_criteria: StopCriteria | None,
    ) -> None:
        token_id = state.token_ids[-1]
        if not sampling_params.ignore_eos and token_id in self.eos_token_ids:
            state.finish_reason, state.stop_reason = "stop", token_id
        elif token_id in sampling_params.stop_token_ids:
            state.finish_reason, state.stop_reason = "stop", token_id

        state.text = decode_tokens(
            self.tokenizer,
            state.token_ids,
            skip_special_tokens=sampling_params.skip_special_tokens,
        )
        if state.finished:
            return

        if sampling_params.stop:
            # A stop string can only start in text that was not released.
            search_from = max(
                0, state.num_released - max(len(s) for s in sampling_params.stop) + 1
            )
            hits = [
                (idx, s)
                for s in sampling_params.stop
                if (idx := state.text.find(s, search_from)) >= 0
            ]
            if hits:
                idx, stop_str = min(hits)
                state.text = state.text[:idx]
                state.finish_reason, state.stop_reason = "stop", stop_str
                return

        if stop_criteria is not None and stop_criteria(list(state.token_ids), state.text):
            state.finish_reason = "stop"
        elif len(state.token_ids) >= sampling_params.max_tokens:
            state.finish_reason = "length"

    def _release_text(self, state: GenerationState, sampling_params: SamplingParams) -> str:
        """Return the text that became final with the latest token."""
        text = state.text
        end = len(text)
        if not state.finished:
            if text.endswith(_REPLACEMENT_CHAR):
                end = len(text.rstrip(_REPLACEMENT_CHAR))
            for stop_str in sampling_params.stop:
                for k in range(min(len(stop_str) - 1, end), 0, -1):
                    if text[:end].endswith(stop_str[:k]):
                        end -= k
                        break
        if end <= state.num_released:
            return ""
        delta = text[state.num_released : end]
        state.num_released = end
        return delta

    def stream(
        self,
        lm_input: LMInput,
        sampling_params: SamplingParams | None = None,
        stop_criteria: StopCriteria | None = None,
    ) -> Iterator[TokenOutput]:
        """Start a session and return its lazy token stream.

        The prompt length is validated before the stream is returned, so
        `ContextLengthExceeded` is raised here rather than on iteration.
        Closing the stream early abandons the session and frees its cache.
        """
        _, tokens = self._start(lm_input, sampling_params, stop_criteria)
        return tokens

    def generate(
        self,
        lm_input: LMInput,
        sampling_params: SamplingParams | None = None,
        callback: TokenCallback | None = None,
        stop_criteria: StopCriteria | None = None,
    ) -> GenerationOutput:
        """Run a session to completion.

        `callback` is invoked for every token; returning `False` from it
        stops the session with finish reason "abort".
        """
        state, tokens = self._start(lm_input, sampling_params, stop_criteria)
        try:
            for output in tokens:
                if callback is None:
                    continue
                if callback(output) is False and not output.finished():
                    state.finish_reason = "abort"
                    break
        finally:
            tokens.close()
        return state.to_output()

    def _start(
        self,
        lm_input: LMInput,
        sampling_params: SamplingParams | None,
        stop_criteria: StopCriteria | None,
    ) -> tuple[GenerationState, Generator[TokenOutput, None, None]]:
        sampling_params = sampling_params or SamplingParams()
        num_tokens = lm_input.num_tokens
        if num_tokens == 0:
            raise TokenizationFailure("prompt produced no tokens")
        if num_tokens > self.max_model_len:
            raise ContextLengthExceeded(num_tokens, self.max_model_len)
        state = self._new_state(lm_input, sampling_params)
        return state, self._session(state, lm_input, sampling_params, stop_criteria)

    def _session(
        self,
        state: GenerationState,
        lm_input: LMInput,
        sampling_params: SamplingParams,
        stop_criteria: StopCriteria | None,
    ) -> Generator[TokenOutput, None, None]:
        try:
            logits = self._prefill(state, lm_input)
            decode_start = time.perf_counter()
            while True:
                sampled = self.sampler(logits, sampling_params, state.generator)
                state.token_ids.append(sampled.token_id)
                if state.logprobs is not None:
                    state.logprobs.append(sampled.logprob)
                self._check_stop(state, sampling_params, stop_criteria)
                state.stats.generation_tokens = state.step
                state.stats.generation_time = time.perf_counter() - decode_start

                yield TokenOutput(
                    index=state.step - 1,
                    token_id=sampled.token_id,
                    text=self._release_text(state, sampling_params),
                    logprob=sampled.logprob,
                    finish_reason=state.finish_reason,
                    stop_reason=state.stop_reason,
                )
                if state.finished:
                    break

                if state.num_processed + 1 > self.max_model_len:
                    raise ContextLengthExceeded(state.num_processed + 1, self.max_model_len)
                logits = self._decode(state, sampled.token_id)
                logger.debug(
                    "step %d: token %d, cache length %d",
                    state.step,
                    sampled.token_id,
                    state.num_processed,
                )
        finally:
            if not state.finished:
                state.finish_reason = "abort"
            state.release()
