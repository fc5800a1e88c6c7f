# SPDX-License-Identifier: Apache-2.0
import time
from collections.abc import Callable

import torch
import torch.nn as nn

from litevlm.config.load import LoadConfig
from litevlm.config.model import ArchitectureConfig
from litevlm.exceptions import InvalidConfiguration, MissingWeights, WeightShapeMismatch
from litevlm.logger import init_logger
from litevlm.model_executor.model_loader.weight_utils import (
    list_weight_files,
    load_weight_table,
    resolve_checkpoint,
)
from litevlm.model_executor.models import ModelRegistry
from litevlm.model_executor.models.interfaces import supports_generation
from litevlm.utils.torch_utils import set_default_torch_dtype

logger = init_logger(__name__)


def initialize_model(
    arch_config: ArchitectureConfig,
    architecture: str,
    device: torch.device,
    dtype: torch.dtype,
) -> nn.Module:
    """Build the module graph for `architecture` with uninitialized weights."""
    try:
        with set_default_torch_dtype(dtype), torch.device(device):
            model = ModelRegistry.resolve(architecture, arch_config)
    except (ValueError, KeyError) as e:
        raise InvalidConfiguration(f"{architecture}: {e}") from e
    if not supports_generation(model):
        raise TypeError(
            f"constructor registered for {architecture} returned "
            f"{type(model).__name__}, which does not support generation"
        )
    return model.eval()


@torch.no_grad()
def inject_weights(model: nn.Module, weights: dict[str, torch.Tensor]) -> None:
    """Move sanitized tensors into the model's parameters.

    Entries are consumed from `weights`, which is empty on return. Every
    parameter must be filled with a tensor of exactly its shape; tensors
    with no matching parameter are reported and dropped.
    """
    params = dict(model.named_parameters())
    missing = []
    for name, param in params.items():
        tensor = weights.pop(name, None)
        if tensor is None:
            missing.append(name)
            continue
        if tuple(tensor.shape) != tuple(param.shape):
            raise WeightShapeMismatch(name, param.shape, tensor.shape)
        param.copy_(tensor.to(dtype=param.dtype))
        del tensor

    if missing:
        raise MissingWeights(missing)
    if weights:
        logger.warning(
            "Ignoring %d checkpoint tensors with no matching parameter: %s",
            len(weights),
            ", ".join(sorted(weights)[:8]) + (", ..." if len(weights) > 8 else ""),
        )
    weights.clear()


def load_model(
    model_dir: str,
    arch_config: ArchitectureConfig,
    load_config: LoadConfig,
    progress_callback: Callable[[int, int], None] | None = None,
    architecture: str | None = None,
) -> nn.Module:
    """Build the model for `arch_config` and fill it from `model_dir`.

    `progress_callback(done, total)` is called after every shard.
    """
    if architecture is None:
        architecture = ModelRegistry.resolve_architecture(arch_config.architectures)
    device = load_config.resolve_device()
    dtype = load_config.resolve_dtype(device)
    logger.info("Resolved architecture %s (%s on %s)", architecture, dtype, device)
    model = initialize_model(arch_config, architecture, device, dtype)

    start = time.perf_counter()
    files = list_weight_files(model_dir)
    weights = load_weight_table(files, load_config.use_tqdm_on_load, progress_callback)
    weights = model.sanitize_weights(weights)
    inject_weights(model, weights)
    logger.info(
        "Loading weights took %.2f seconds (%d shards)",
        time.perf_counter() - start,
        len(files),
    )
    return model


__all__ = [
    "initialize_model",
    "inject_weights",
    "load_model",
    "resolve_checkpoint",
]
