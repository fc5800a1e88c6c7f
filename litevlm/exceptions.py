# SPDX-License-Identifier: Apache-2.0
"""Error taxonomy for checkpoint loading and generation.

Load-time errors derive from `ModelLoadError` and are always fatal to the
load attempt. Per-session errors derive from `GenerationError` and only
terminate the session that raised them.
"""

from collections.abc import Sequence
from typing import Any


class LiteVLMError(Exception):
    """Root of every error raised by litevlm."""


class ModelLoadError(LiteVLMError):
    pass


class GenerationError(LiteVLMError):
    pass


class CheckpointUnavailable(ModelLoadError):

    def __init__(self, location: str, detail: str):
        self.location = location
        self.detail = detail
        super().__init__(f"Checkpoint {location!r} is unavailable: {detail}")


class InvalidConfiguration(ModelLoadError):

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid configuration: {detail}")


class UnknownArchitecture(ModelLoadError):

    def __init__(self, architecture: str | Sequence[str], available: Sequence[str] = ()):
        self.architecture = architecture
        self.available = list(available)
        msg = f"Unknown architecture: {architecture!r}"
        if self.available:
            msg += f". Registered: {', '.join(sorted(self.available))}"
        super().__init__(msg)


class WeightsUnreadable(ModelLoadError):

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Weights unreadable: {detail}")


class WeightShapeMismatch(ModelLoadError):

    def __init__(self, tensor_name: str, expected: Sequence[int], actual: Sequence[int]):
        self.tensor_name = tensor_name
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"Weight {tensor_name!r} has shape {self.actual}, "
            f"expected {self.expected}"
        )


class MissingWeights(ModelLoadError):

    def __init__(self, parameter_names: str | Sequence[str]):
        if isinstance(parameter_names, str):
            parameter_names = [parameter_names]
        self.parameter_names = sorted(parameter_names)
        self.parameter_name = self.parameter_names[0]
        shown = ", ".join(self.parameter_names[:8])
        if len(self.parameter_names) > 8:
            shown += f", ... ({len(self.parameter_names)} total)"
        super().__init__(f"Parameters not initialized from checkpoint: {shown}")


class VisualTokenCountMismatch(GenerationError):

    def __init__(self, num_placeholders: int, num_features: int):
        self.num_placeholders = num_placeholders
        self.num_features = num_features
        super().__init__(
            f"Prompt has {num_placeholders} visual placeholder tokens but "
            f"{num_features} visual feature vectors were produced"
        )


class ContextLengthExceeded(GenerationError):

    def __init__(self, num_tokens: int, max_model_len: int):
        self.num_tokens = num_tokens
        self.max_model_len = max_model_len
        super().__init__(
            f"Sequence of {num_tokens} tokens exceeds the maximum context "
            f"length of {max_model_len}"
        )


class TokenizationFailure(GenerationError):

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Tokenization failed: {detail}")


class InferenceFailure(GenerationError):

    def __init__(self, detail: str, step: int | None = None):
        self.detail = detail
        self.step = step
        where = f" at step {step}" if step is not None else ""
        super().__init__(f"Inference failed{where}: {detail}")


class KVCacheInconsistencyError(AssertionError):
    """Cache lengths diverged from the number of processed tokens.

    This signals a bug in cache management, so it is an `AssertionError`
    rather than a session error and is never converted to `InferenceFailure`.
    """

    def __init__(self, lengths: dict[int, int] | Any, expected: int):
        self.lengths = lengths
        self.expected = expected
        super().__init__(
            f"KV cache lengths {lengths} diverge from {expected} processed tokens"
        )
