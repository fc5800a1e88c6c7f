# SPDX-License-Identifier: Apache-2.0
import asyncio
import threading
from collections.abc import Callable, Generator, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import torch
import torch.nn as nn

from litevlm.config import (
    ArchitectureConfig,
    LoadConfig,
    ProcessorConfig,
    load_architecture_config,
    load_processor_config,
)
from litevlm.engine.generation import GenerationEngine, StopCriteria, TokenCallback
from litevlm.logger import init_logger
from litevlm.lora.request import LoRARequest
from litevlm.lora.utils import merge_lora
from litevlm.model_executor.model_loader import load_model, resolve_checkpoint
from litevlm.model_executor.models import ModelRegistry
from litevlm.multimodal.inputs import LMInput
from litevlm.multimodal.processing import BaseProcessor, ImageLike, Prompt, get_processor
from litevlm.multimodal.video import VideoInput
from litevlm.outputs import GenerationOutput, TokenOutput
from litevlm.sampling_params import SamplingParams
from litevlm.transformers_utils.tokenizer import get_tokenizer

logger = init_logger(__name__)

ProgressCallback = Callable[[float], None]
TokenizerLoader = Callable[[str], Any]

# Fractions of the load progress reached after each step.
_PROGRESS_RESOLVED = 0.05
_PROGRESS_CONFIGURED = 0.1
_PROGRESS_WEIGHTS = 0.9


class SessionGate:
    """Lets generation sessions run together while adapter merging, which
    mutates the shared parameters, runs alone."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active_sessions = 0
        self._exclusive = False

    @property
    def active_sessions(self) -> int:
        with self._cond:
            return self._active_sessions

    @contextmanager
    def shared(self) -> Generator[None, None, None]:
        with self._cond:
            self._cond.wait_for(lambda: not self._exclusive)
            self._active_sessions += 1
        try:
            yield
        finally:
            with self._cond:
                self._active_sessions -= 1
                self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Generator[None, None, None]:
        with self._cond:
            self._cond.wait_for(
                lambda: not self._exclusive and self._active_sessions == 0
            )
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class Context:
    """A loaded model together with its tokenizer and processor.

    Args:
        model: The model with weights loaded.
        tokenizer: The checkpoint's tokenizer.
        processor: Turns prompts and media into `LMInput`.
        arch_config: The decoded architecture configuration.
        load_config: The options the model was loaded with.
        model_dir: Local directory of the checkpoint.

    Sessions started with `generate` or `stream` share the model read-only
    and may run from several threads. `merge_adapter` waits for running
    sessions and blocks new ones until it is done.
    """

    def __init__(
        self,
        model: nn.Module,
        tokenizer: Any,
        processor: BaseProcessor,
        arch_config: ArchitectureConfig,
        load_config: LoadConfig,
        model_dir: str | None = None,
    ) -> None:
        self.model = model
        self.tokenizer = tokenizer
        self.processor = processor
        self.arch_config = arch_config
        self.load_config = load_config
        self.model_dir = model_dir

        eos_token_ids = list(arch_config.eos_token_id)
        tokenizer_eos = getattr(tokenizer, "eos_token_id", None)
        if isinstance(tokenizer_eos, int) and tokenizer_eos not in eos_token_ids:
            eos_token_ids.append(tokenizer_eos)
        self.engine = GenerationEngine(
            model,
            tokenizer,
            max_model_len=load_config.max_model_len or arch_config.max_model_len,
            eos_token_ids=eos_token_ids,
            prefill_chunk_size=load_config.prefill_chunk_size,
        )
        self._gate = SessionGate()

    @property
    def processor_config(self) -> ProcessorConfig:
        return self.processor.config

    @property
    def max_model_len(self) -> int:
        return self.engine.max_model_len

    def process(
        self,
        prompt: Prompt,
        images: Sequence[ImageLike] | None = None,
        videos: Sequence[VideoInput] | None = None,
    ) -> LMInput:
        """Tokenize `prompt` (a string or a list of chat messages) and
        preprocess the media its placeholders refer to."""
        return self.processor.process(prompt, images, videos)

    def generate(
        self,
        lm_input: LMInput,
        sampling_params: SamplingParams | None = None,
        callback: TokenCallback | None = None,
        stop_criteria: StopCriteria | None = None,
    ) -> GenerationOutput:
        with self._gate.shared():
            return self.engine.generate(lm_input, sampling_params, callback, stop_criteria)

    def stream(
        self,
        lm_input: LMInput,
        sampling_params: SamplingParams | None = None,
        stop_criteria: StopCriteria | None = None,
    ) -> Iterator[TokenOutput]:
        tokens = self.engine.stream(lm_input, sampling_params, stop_criteria)
        return self._gated(tokens)

    def _gated(self, tokens: Generator[TokenOutput, None, None]) -> Iterator[TokenOutput]:
        try:
            with self._gate.shared():
                yield from tokens
        finally:
            tokens.close()

    def merge_adapter(
        self,
        adapter: str | Path | dict[str, torch.Tensor] | LoRARequest,
        scale: float = 1.0,
    ) -> int:
        """Fold a LoRA adapter into the model weights.

        `adapter` is a PEFT adapter directory, a table of PEFT-named
        tensors, or a prepared `LoRARequest`. The merge is permanent.
        Returns the number of projections changed.
        """
        if isinstance(adapter, LoRARequest):
            lora_request = adapter
        elif isinstance(adapter, dict):
            lora_request = LoRARequest("adapter", lora_tensors=adapter, scale=scale)
        else:
            lora_request = LoRARequest(
                Path(adapter).name, lora_path=str(adapter), scale=scale
            )
        with self._gate.exclusive():
            return merge_lora(self.model, lora_request)


def load(
    location: str | Path,
    progress_callback: ProgressCallback | None = None,
    *,
    load_config: LoadConfig | None = None,
    tokenizer_loader: TokenizerLoader | None = None,
) -> Context:
    """Load a checkpoint from a local directory or a hub repository id.

    `progress_callback` receives the fraction of the load done, from 0.0
    to 1.0. Failures raise the `ModelLoadError` of the failing step, or
    `TokenizationFailure` when the tokenizer cannot be built; no partially
    loaded context is returned.
    """
    load_config = load_config or LoadConfig()

    def report(fraction: float) -> None:
        if progress_callback is not None:
            progress_callback(min(max(fraction, 0.0), 1.0))

    report(0.0)
    model_dir = resolve_checkpoint(location, load_config)
    logger.info("Loading checkpoint from %s", model_dir)
    report(_PROGRESS_RESOLVED)

    arch_config = load_architecture_config(model_dir)
    architecture = ModelRegistry.resolve_architecture(arch_config.architectures)
    report(_PROGRESS_CONFIGURED)

    span = _PROGRESS_WEIGHTS - _PROGRESS_CONFIGURED
    model = load_model(
        model_dir,
        arch_config,
        load_config,
        progress_callback=lambda done, total: report(
            _PROGRESS_CONFIGURED + span * done / total
        ),
        architecture=architecture,
    )

    processor_config = load_processor_config(model_dir, arch_config)
    tokenizer = (tokenizer_loader or get_tokenizer)(model_dir)
    processor = get_processor(
        processor_config,
        tokenizer,
        arch_config,
        ModelRegistry.default_processor(architecture),
    )
    logger.info("Loaded %s with %s", architecture, type(processor).__name__)
    report(1.0)
    return Context(model, tokenizer, processor, arch_config, load_config, model_dir)


async def load_async(
    location: str | Path,
    progress_callback: ProgressCallback | None = None,
    *,
    load_config: LoadConfig | None = None,
    tokenizer_loader: TokenizerLoader | None = None,
) -> Context:
    """`load` in a worker thread, keeping the event loop free."""
    return await asyncio.to_thread(
        load,
        location,
        progress_callback,
        load_config=load_config,
        tokenizer_loader=tokenizer_loader,
    )
