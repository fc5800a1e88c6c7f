# SPDX-License-Identifier: Apache-2.0
from dataclasses import dataclass

import torch


@dataclass
class LoRARequest:
    """
    An adapter to fold into a loaded model.

    Either `lora_path` (a PEFT adapter directory) or `lora_tensors` (an
    in-memory table with PEFT key names) must be given. `scale` multiplies
    the adapter's own `lora_alpha / r` scaling.
    """
    lora_name: str
    lora_path: str | None = None
    lora_tensors: dict[str, torch.Tensor] | None = None
    scale: float = 1.0

    def __post_init__(self):
        if (self.lora_path is None) == (self.lora_tensors is None):
            raise ValueError("exactly one of lora_path and lora_tensors is required")
