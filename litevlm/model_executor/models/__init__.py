# SPDX-License-Identifier: Apache-2.0
from litevlm.model_executor.models.registry import ModelRegistry

# Built-in architectures register themselves on import.
from litevlm.model_executor.models import llama, llava, qwen2_vl  # noqa: E402,F401

__all__ = ["ModelRegistry"]
