# SPDX-License-Identifier: Apache-2.0
"""Loading PEFT adapters and merging them into `LiteLinear` layers."""

import json
import math
import os
from collections.abc import Sequence

import torch
import torch.nn as nn
from safetensors import SafetensorError
from safetensors.torch import load_file

from litevlm.exceptions import InvalidConfiguration, WeightsUnreadable
from litevlm.logger import init_logger
from litevlm.lora.request import LoRARequest
from litevlm.model_executor.layers.linear import LiteLinear
from litevlm.model_executor.models.utils import PACKED_MODULES_MAPPING

logger = init_logger(__name__)

ADAPTER_CONFIG_NAME = "adapter_config.json"
ADAPTER_WEIGHTS_NAME = "adapter_model.safetensors"

_PEFT_PREFIX = "base_model.model."


def parse_fine_tuned_lora_name(name: str) -> tuple[str, bool] | None:
    """Split a PEFT tensor name into its module name and whether it is the
    A (down) or B (up) matrix.

    Returns None for tensors that are not LoRA matrices.
    """
    if name.startswith(_PEFT_PREFIX):
        name = name[len(_PEFT_PREFIX):]
    parts = name.split(".")
    if len(parts) >= 3 and parts[-1] == "weight" and parts[-2] in ("lora_A", "lora_B"):
        return ".".join(parts[:-2]), parts[-2] == "lora_A"
    return None


def load_adapter(path: str) -> tuple[dict[str, torch.Tensor], float]:
    """Read a PEFT adapter directory; returns its tensors and scaling."""
    config_path = os.path.join(path, ADAPTER_CONFIG_NAME)
    try:
        with open(config_path) as f:
            config = json.load(f)
        rank = int(config["r"])
        alpha = float(config.get("lora_alpha", rank))
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise InvalidConfiguration(f"{config_path}: {e}") from e
    if config.get("use_rslora", False):
        scaling = alpha / math.sqrt(rank)
    else:
        scaling = alpha / rank

    weights_path = os.path.join(path, ADAPTER_WEIGHTS_NAME)
    try:
        tensors = load_file(weights_path, device="cpu")
    except (OSError, SafetensorError, ValueError) as e:
        raise WeightsUnreadable(f"{weights_path}: {e}") from e
    return tensors, scaling


def _resolve_module(
    model: nn.Module, name: str, prefix_rules: Sequence[tuple[str, str]]
) -> tuple[LiteLinear, str, int]:
    module_name = name
    for old, new in prefix_rules:
        if module_name.startswith(old):
            module_name = new + module_name[len(old):]
    parent, _, leaf = module_name.rpartition(".")
    shard_id = 0
    if leaf in PACKED_MODULES_MAPPING:
        leaf, shard_id = PACKED_MODULES_MAPPING[leaf]
        module_name = f"{parent}.{leaf}" if parent else leaf
    try:
        module = model.get_submodule(module_name)
    except AttributeError as e:
        raise ValueError(f"LoRA target {name!r} has no module {module_name!r}") from e
    if not isinstance(module, LiteLinear):
        raise ValueError(f"LoRA target {module_name!r} is not a linear layer")
    return module, module_name, shard_id


@torch.no_grad()
def merge_lora(model: nn.Module, lora_request: LoRARequest) -> int:
    """Fold the adapter's `B @ A * scaling` into the base weights.

    Every target is validated before any weight changes, so a failing
    adapter leaves the model untouched. Returns the number of merged
    projections.
    """
    if lora_request.lora_path is not None:
        tensors, scaling = load_adapter(lora_request.lora_path)
    else:
        tensors, scaling = lora_request.lora_tensors, 1.0
    scaling *= lora_request.scale

    pairs: dict[str, dict[bool, torch.Tensor]] = {}
    for name, tensor in tensors.items():
        parsed = parse_fine_tuned_lora_name(name)
        if parsed is None:
            logger.warning("Ignoring non-LoRA adapter tensor %s", name)
            continue
        module_name, is_lora_a = parsed
        pairs.setdefault(module_name, {})[is_lora_a] = tensor

    prefix_rules = getattr(model, "weight_prefix_rules", ())
    touched: dict[str, LiteLinear] = {}
    added: list[tuple[LiteLinear, str]] = []
    try:
        for name, pair in pairs.items():
            if len(pair) != 2:
                raise ValueError(f"LoRA target {name!r} lacks its A or B matrix")
            module, module_name, shard_id = _resolve_module(model, name, prefix_rules)
            adapter_name = f"{lora_request.lora_name}.{shard_id}"
            module.add_adapter(
                adapter_name,
                pair[True],
                pair[False],
                scaling,
                shard_id,
            )
            added.append((module, adapter_name))
            touched[module_name] = module
    except ValueError:
        for module, adapter_name in added:
            module.remove_adapter(adapter_name)
        raise

    merged = sum(module.merge_adapters() for module in touched.values())
    logger.info(
        "Merged LoRA adapter %s into %d projections (scaling %.4g)",
        lora_request.lora_name,
        merged,
        scaling,
    )
    return merged
