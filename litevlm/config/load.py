# SPDX-License-Identifier: Apache-2.0
from typing import Literal

import torch
from pydantic import ConfigDict, Field
from pydantic.dataclasses import dataclass

from litevlm import envs

ModelDType = Literal["auto", "float32", "float16", "bfloat16"]

_STR_DTYPE_TO_TORCH_DTYPE = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}

# Files fetched when a checkpoint has to be downloaded.
DEFAULT_ALLOW_PATTERNS = [
    "*.json",
    "*.safetensors",
    "*.model",
    "*.txt",
    "*.jinja",
    "tokenizer*",
]


@dataclass(config=ConfigDict(arbitrary_types_allowed=True))
class LoadConfig:
    """Options that control how a checkpoint is fetched and materialized."""

    download_dir: str | None = None
    """Directory for downloaded checkpoints; defaults to the hub cache."""

    revision: str | None = None

    dtype: ModelDType = "auto"
    """Parameter dtype. `auto` keeps float32 on CPU and bfloat16 elsewhere."""

    device: str | None = None
    """Torch device; defaults to CUDA when available."""

    use_tqdm_on_load: bool = envs.LITEVLM_USE_TQDM_ON_LOAD

    prefill_chunk_size: int = Field(default=envs.LITEVLM_PREFILL_CHUNK_SIZE, gt=0)

    max_model_len: int | None = envs.LITEVLM_MAX_MODEL_LEN
    """Overrides the context length declared by the checkpoint."""

    allow_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOW_PATTERNS)
    )

    def resolve_device(self) -> torch.device:
        if self.device is not None:
            return torch.device(self.device)
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")

    def resolve_dtype(self, device: torch.device) -> torch.dtype:
        if self.dtype != "auto":
            return _STR_DTYPE_TO_TORCH_DTYPE[self.dtype]
        return torch.float32 if device.type == "cpu" else torch.bfloat16
