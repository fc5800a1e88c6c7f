# SPDX-License-Identifier: Apache-2.0
from litevlm.config import LoadConfig
from litevlm.entrypoints.llm import Context, load, load_async
from litevlm.multimodal import LMInput, VideoInput
from litevlm.outputs import GenerationOutput, TokenOutput
from litevlm.sampling_params import SamplingParams
from litevlm.version import __version__

__all__ = [
    "Context",
    "GenerationOutput",
    "LMInput",
    "LoadConfig",
    "SamplingParams",
    "TokenOutput",
    "VideoInput",
    "__version__",
    "load",
    "load_async",
]
